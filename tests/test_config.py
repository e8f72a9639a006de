"""Tests for config loading, provider files, tiers and runtime wiring."""

import json

import pytest
from cryptography.fernet import Fernet

from conftest import make_descriptor
from llm_relay.app_factory import build_runtime
from llm_relay.config import load_config, load_dotenv
from llm_relay.llm_providers import apply_credentials, load_provider_registry, parse_tiers, unusable_tiers
from llm_relay.security import TokenCipher, resolve_credentials


def write_json(path, data):
    path.write_text(json.dumps(data))
    return path


def base_config(**overrides):
    data = {
        "telegram_bot_token": "123:abc",
        "owner_user_id": 42,
        "tiers": {"free": ["alpha"]},
        "history": {"persist": False},
    }
    data.update(overrides)
    return data


@pytest.fixture
def providers_dir(tmp_path):
    directory = tmp_path / "llm_providers"
    directory.mkdir()
    write_json(
        directory / "alpha.json",
        {
            "id": "alpha",
            "label": "Alpha",
            "kind": "openai_chat",
            "base_url": "https://alpha.example.test/v1",
            "priority": 10,
            "capabilities": {"vision": True, "tools": False},
            "auth": {"mode": "bearer", "credential": "ALPHA_KEY"},
            "limits": {"timeout_sec": 12, "retries": 1, "max_requests_per_minute": 30},
            "history": {"max_messages": 8},
            "default_model": "alpha-small",
            "models": {"premium": "alpha-large"},
        },
    )
    write_json(
        directory / "beta.json",
        {"id": "beta", "base_url": "http://localhost:11434", "kind": "generic", "priority": 1},
    )
    return directory


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        config = load_config(write_json(tmp_path / "config.json", base_config()))
        assert config.owner_user_id == 42
        assert config.default_tier == "free"
        assert config.llm_deadline_sec is None
        assert config.llm_failover_on_filtered is False
        assert config.history_max_turns == 20
        assert config.history_persist is False
        assert config.system_prompt

    def test_user_tiers(self, tmp_path):
        data = base_config(premium_user_ids=[7, "8"], user_tiers={"9": "staff"})
        config = load_config(write_json(tmp_path / "config.json", data))
        assert config.tier_for_user(7) == "premium"
        assert config.tier_for_user(8) == "premium"
        assert config.tier_for_user(9) == "staff"
        assert config.tier_for_user(10) == "free"

    def test_llm_section(self, tmp_path):
        data = base_config(llm={"deadline_sec": 45, "failover_delay_sec": 0.5, "system_prompt": ""})
        config = load_config(write_json(tmp_path / "config.json", data))
        assert config.llm_deadline_sec == 45.0
        assert config.llm_failover_delay_sec == 0.5
        assert config.system_prompt is None

    def test_tiers_must_be_object(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(write_json(tmp_path / "config.json", base_config(tiers=["free"])))


def test_load_dotenv(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text('# comment\nA=1\nB = "quoted value"\nC=\'x\'\nnot a pair\n=empty\n')
    assert load_dotenv(env_file) == {"A": "1", "B": "quoted value", "C": "x"}
    assert load_dotenv(tmp_path / "missing.env") == {}


class TestProviderRegistry:
    def test_parses_files(self, providers_dir):
        registry = load_provider_registry(providers_dir)
        alpha = registry["alpha"]
        assert alpha.capabilities == ("vision",)
        assert alpha.supports("vision")
        assert alpha.timeout_sec == 12.0
        assert alpha.retries == 1
        assert alpha.max_requests_per_minute == 30
        assert alpha.max_history_messages == 8
        assert alpha.model_for_tier("premium") == "alpha-large"
        assert alpha.model_for_tier("free") == "alpha-small"
        assert registry["beta"].auth_mode == "none"
        assert registry["beta"].label == "beta"

    def test_skips_bad_and_duplicate_files(self, providers_dir):
        (providers_dir / "broken.json").write_text("{not json")
        write_json(providers_dir / "gamma.json", {"id": "alpha", "base_url": "https://dup.example.test"})
        write_json(providers_dir / "nourl.json", {"id": "delta"})
        write_json(providers_dir / "weird.json", {"id": "eps", "base_url": "https://x", "kind": "soap"})
        write_json(providers_dir / "nocred.json", {"id": "zeta", "base_url": "https://x", "auth": {"mode": "bearer"}})
        registry = load_provider_registry(providers_dir)
        assert sorted(registry) == ["alpha", "beta"]
        assert registry["alpha"].base_url == "https://alpha.example.test/v1"

    @pytest.mark.parametrize(
        "content",
        [
            {"id": "bad", "base_url": "https://x", "priority": "high"},
            {"id": "bad", "base_url": "https://x", "limits": {"timeout_sec": "soon"}},
            {"id": "bad", "base_url": "https://x", "limits": {"retries": [1]}},
            {"id": "bad", "base_url": "https://x", "options": 5},
            {"id": "bad", "base_url": "https://x", "headers": ["X-Api: 1"]},
            {"id": "bad", "base_url": "https://x", "limits": "fast"},
            [{"id": "bad", "base_url": "https://x"}],
        ],
    )
    def test_skips_files_with_invalid_values(self, providers_dir, content):
        write_json(providers_dir / "bad.json", content)
        registry = load_provider_registry(providers_dir)
        assert sorted(registry) == ["alpha", "beta"]

    def test_missing_dir(self, tmp_path):
        assert load_provider_registry(tmp_path / "nope") == {}

    def test_apply_credentials_disables_missing(self):
        registry = {
            "A": make_descriptor("A", credential="A_KEY"),
            "B": make_descriptor("B", credential="B_KEY"),
            "C": make_descriptor("C", auth_mode="none"),
        }
        result = apply_credentials(registry, {"A_KEY": "secret"})
        assert result["A"].enabled
        assert not result["B"].enabled
        assert result["C"].enabled
        assert registry["B"].enabled


class TestTiers:
    def test_weights_default_to_priority(self):
        registry = {"A": make_descriptor("A", priority=3), "B": make_descriptor("B", priority=9)}
        tiers = parse_tiers(
            {
                "free": ["A", "B"],
                "premium": {"providers": [{"id": "A", "weight": 20}, "B"], "failover_on_filtered": True},
            },
            registry,
        )
        assert tiers["free"].ordered_provider_ids() == ["B", "A"]
        assert tiers["free"].failover_on_filtered is False
        assert tiers["premium"].ordered_provider_ids() == ["A", "B"]
        assert tiers["premium"].failover_on_filtered is True

    def test_default_failover_flag(self):
        tiers = parse_tiers({"free": ["A"]}, {"A": make_descriptor("A")}, default_failover_on_filtered=True)
        assert tiers["free"].failover_on_filtered is True

    def test_unknown_provider_is_rejected(self):
        with pytest.raises(ValueError, match="unknown provider 'ghost'"):
            parse_tiers({"free": ["A", "ghost"]}, {"A": make_descriptor("A")})

    def test_unusable_tiers(self):
        registry = {"A": make_descriptor("A", enabled=False), "B": make_descriptor("B")}
        tiers = parse_tiers({"free": ["A"], "premium": ["A", "B"]}, registry)
        assert unusable_tiers(tiers, registry) == ["free"]


class TestCredentials:
    def test_plain_and_encrypted(self):
        cipher = TokenCipher(Fernet.generate_key().decode())
        env = {"A": " plain ", "B": "fernet:" + cipher.encrypt("hidden"), "C": ""}
        assert resolve_credentials(["A", "B", "C", "D"], env, cipher) == {"A": "plain", "B": "hidden"}

    def test_encrypted_without_key(self):
        with pytest.raises(ValueError):
            resolve_credentials(["B"], {"B": "fernet:abc"})


class TestBuildRuntime:
    @pytest.mark.asyncio
    async def test_wires_dispatcher(self, tmp_path, providers_dir):
        config = load_config(write_json(tmp_path / "config.json", base_config(tiers={"free": ["alpha", "beta"]})))
        runtime = build_runtime(config, {"ALPHA_KEY": "k"}, base_dir=tmp_path)
        try:
            assert set(runtime.provider_registry) == {"alpha", "beta"}
            assert runtime.provider_registry["alpha"].enabled
            assert runtime.kv_store is None
            assert runtime.dispatcher.tier_report() == []
            assert [d.provider_id for d in runtime.dispatcher.resolve_candidates("free")] == ["alpha", "beta"]
        finally:
            await runtime.aclose()

    @pytest.mark.asyncio
    async def test_missing_credential_leaves_tier_unusable(self, tmp_path, providers_dir):
        data = base_config(history={"persist": True}, database_path=str(tmp_path / "bot.sqlite3"))
        config = load_config(write_json(tmp_path / "config.json", data))
        runtime = build_runtime(config, {}, base_dir=tmp_path)
        try:
            assert not runtime.provider_registry["alpha"].enabled
            assert runtime.dispatcher.tier_report() == ["free"]
            assert runtime.kv_store is not None
        finally:
            await runtime.aclose()

    def test_unknown_default_tier(self, tmp_path, providers_dir):
        config = load_config(write_json(tmp_path / "config.json", base_config(default_tier="gold")))
        with pytest.raises(ValueError, match="gold"):
            build_runtime(config, {"ALPHA_KEY": "k"}, base_dir=tmp_path)

    def test_no_providers(self, tmp_path):
        config = load_config(write_json(tmp_path / "config.json", base_config()))
        with pytest.raises(ValueError, match="No providers"):
            build_runtime(config, {}, base_dir=tmp_path)
