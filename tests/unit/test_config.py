import pytest
from pydantic import ValidationError

from knowledge_search.config import RankingConfig, get_config, reload_config


def test_config_reads_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("KNOWLEDGE_SEARCH_ADAPTER_TIMEOUT", "0.75")
    monkeypatch.setenv("KNOWLEDGE_SEARCH_CONTEXT_TOP_N", "3")
    monkeypatch.setenv("KNOWLEDGE_SEARCH_CONVERSATION_DB", str(tmp_path / "c.db"))
    monkeypatch.setenv("KNOWLEDGE_SEARCH_LOG_LEVEL", "debug")
    monkeypatch.setenv("KNOWLEDGE_SEARCH_RECORDS_SEED", str(tmp_path / "records.json"))

    config = reload_config()

    assert config.aggregator.adapter_timeout_seconds == 0.75
    assert config.context.top_n == 3
    assert config.context.history_turns == 6
    assert config.conversation.sqlite_path == tmp_path / "c.db"
    assert config.log_level == "DEBUG"
    assert config.records_seed_path == tmp_path / "records.json"
    assert get_config() is config

    monkeypatch.delenv("KNOWLEDGE_SEARCH_ADAPTER_TIMEOUT")
    monkeypatch.delenv("KNOWLEDGE_SEARCH_CONTEXT_TOP_N")
    monkeypatch.delenv("KNOWLEDGE_SEARCH_CONVERSATION_DB")
    monkeypatch.delenv("KNOWLEDGE_SEARCH_LOG_LEVEL")
    monkeypatch.delenv("KNOWLEDGE_SEARCH_RECORDS_SEED")
    reset = reload_config()
    assert reset.conversation.sqlite_path is None
    assert reset.records_seed_path is None


def test_whole_field_bonus_must_exceed_position_bonus() -> None:
    with pytest.raises(ValidationError):
        RankingConfig(whole_field_bonus=2.0)
