import pytest
from pydantic import ValidationError

from hati_core.config.settings import Settings
from hati_core.infrastructure.storage import JsonConversationStore, SqlConversationStore, create_store
from hati_core.prompts import load_persona_prompt
from hati_core.providers import OpenAIClient, create_provider
from hati_core.providers.registry import OPENAI_CONFIG, get_provider_config


def test_settings_defaults_and_log_level():
    s = Settings(log_level="debug")
    assert s.log_level == "DEBUG"
    assert s.storage_backend in ("json", "sql")
    with pytest.raises(ValidationError):
        Settings(log_level="chatty")


def test_settings_rejects_short_api_key():
    with pytest.raises(ValidationError):
        Settings(openai_api_key="abc")


def test_settings_reads_yaml_file(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("chat_model: yaml-model\ntts_voice: alloy\n", encoding="utf-8")
    monkeypatch.setenv("HATI_CONFIG_FILE", str(cfg))
    monkeypatch.delenv("CHAT_MODEL", raising=False)
    monkeypatch.delenv("TTS_VOICE", raising=False)
    assert Settings().chat_model == "yaml-model"

    # 环境变量优先于配置文件
    monkeypatch.setenv("TTS_VOICE", "echo")
    assert Settings().tts_voice == "echo"


def test_create_store_by_backend(tmp_path):
    json_store = create_store(Settings(storage_backend="json", storage_root=str(tmp_path / "js")))
    assert isinstance(json_store, JsonConversationStore)

    sql_store = create_store(Settings(storage_backend="sql", database_url=f"sqlite:///{tmp_path / 'x.db'}"))
    assert isinstance(sql_store, SqlConversationStore)
    sql_store.dispose()


def test_registry_and_provider_factory():
    assert OPENAI_CONFIG.resolve("chat").provider_model == "gpt-5.2"
    assert OPENAI_CONFIG.resolve("gpt-4o-mini").provider_model == "gpt-4o-mini"
    assert get_provider_config("OpenAI") is OPENAI_CONFIG
    assert isinstance(create_provider(), OpenAIClient)
    with pytest.raises(KeyError):
        create_provider("other")


def test_builtin_persona_prompt():
    assert "Hati" in load_persona_prompt()


def test_service_builds_provider_from_its_own_settings(tmp_path):
    from hati_core.api.service import HatiService

    cfg = Settings(storage_root=str(tmp_path / "js"), openai_base_url="https://llm.internal/v1")
    service = HatiService(cfg)
    assert isinstance(service.provider_client, OpenAIClient)
    assert service.provider_client._settings is cfg


def test_speech_player_sample_rate_from_settings():
    from hati_core.client.audio import PyAudioSink, SpeechPlayer
    from hati_core.config.settings import settings

    player = SpeechPlayer(client=None)
    assert player.sample_rate == settings.tts_sample_rate
    sink = player._sink_factory(player.queue)
    assert isinstance(sink, PyAudioSink)
    assert sink.sample_rate == settings.tts_sample_rate

    assert SpeechPlayer(client=None, sample_rate=16000).sample_rate == 16000
