from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

TmuxLayout = Literal[
    "main-vertical",
    "main-horizontal",
    "tiled",
    "even-horizontal",
    "even-vertical",
    "dynamic-vertical",
]

DYNAMIC_LAYOUT: TmuxLayout = "dynamic-vertical"


class TmuxConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    layout: TmuxLayout = "main-vertical"
    # None lets the layout engine pick a share from the column count.
    main_pane_size: Optional[int] = Field(default=None, ge=20, le=80)
    auto_close: bool = True
    spawn_delay_ms: int = Field(default=300, ge=50, le=2000)
    max_retry_attempts: int = Field(default=2, ge=0, le=5)
    layout_debounce_ms: int = Field(default=150, ge=50, le=1000)
    max_agents_per_column: int = Field(default=3, ge=1, le=10)
    poll_interval_ms: int = Field(default=2000, ge=250, le=60_000)
    session_missing_grace_ms: int = Field(default=6000, ge=0)
    session_timeout_ms: int = Field(default=600_000, ge=1000)


class ReaperConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    interval_ms: int = Field(default=30_000, ge=1000)
    min_zombie_checks: int = Field(default=3, ge=1)
    grace_period_ms: int = Field(default=5000, ge=0)
    auto_self_destruct: bool = False
    self_destruct_timeout_ms: int = Field(default=3_600_000, ge=60_000)
    max_ports: int = Field(default=10, ge=1, le=1000)


class PaneherdConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    port: int = Field(default=4096, ge=1, le=65535)
    tmux: TmuxConfig = TmuxConfig()
    reaper: ReaperConfig = ReaperConfig()

    @model_validator(mode="after")
    def validate_timings(self) -> "PaneherdConfig":
        # A session must be allowed to go missing for at least one poll.
        if self.tmux.session_missing_grace_ms and self.tmux.session_missing_grace_ms < self.tmux.poll_interval_ms:
            raise ValueError("tmux.session_missing_grace_ms must be >= tmux.poll_interval_ms")
        return self
