"""Unit tests for paneherd.utils."""

from paneherd.utils import expand_env_vars, short_id


def test_expand_env_vars_nested(monkeypatch):
    """Test expansion through dicts and lists, unknown vars left alone."""
    monkeypatch.setenv("PANEHERD_TEST_HOST", "127.0.0.1")
    monkeypatch.delenv("PANEHERD_TEST_UNSET", raising=False)

    config = {
        "url": "http://${PANEHERD_TEST_HOST}:4096",
        "list": ["${PANEHERD_TEST_HOST}", 3],
        "other": "${PANEHERD_TEST_UNSET}",
        "flag": True,
    }

    assert expand_env_vars(config) == {
        "url": "http://127.0.0.1:4096",
        "list": ["127.0.0.1", 3],
        "other": "${PANEHERD_TEST_UNSET}",
        "flag": True,
    }


def test_short_id():
    """Test id shortening for log lines."""
    assert short_id("ses_0123456789abcdef") == "ses_01234567"
    assert short_id("ses_1") == "ses_1"
