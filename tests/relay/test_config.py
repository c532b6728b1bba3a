import pytest
from backend.relay.config import CLIENT_PROCESSING_DEADLINE_S, RelaySettings


def test_config_defaults():
    cfg = RelaySettings()
    assert cfg.min_audio_bytes == 1000
    assert cfg.context_window == 10
    assert cfg.chat_log_max_entries == 100
    assert 0 < cfg.llm_timeout_s < CLIENT_PROCESSING_DEADLINE_S


def test_llm_deadline_must_beat_client_deadline():
    with pytest.raises(ValueError, match="llm_timeout_s"):
        RelaySettings(llm_timeout_s=CLIENT_PROCESSING_DEADLINE_S)


def test_validation_reports_every_problem():
    with pytest.raises(ValueError) as exc:
        RelaySettings(context_window=3, memory_top_k=0)
    assert "context_window" in str(exc.value)
    assert "memory_top_k" in str(exc.value)


def test_as_dict_hides_api_key():
    cfg = RelaySettings(openai_api_key="sk-secret")
    d = cfg.as_dict()
    assert d["llm_enabled"] is True
    assert "sk-secret" not in str(d)
