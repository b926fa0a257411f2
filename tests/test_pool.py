import pytest

from autogui.config import ApiConfig, ApiModelConfig, ApiProviderConfig
from autogui.errors import NoModelAvailableError
from autogui.pool import ModelPool, build_model_pool


def two_providers() -> ApiConfig:
    return ApiConfig(providers=[
        ApiProviderConfig(
            id="openai", name="OpenAI", base_url="https://api.openai.com/v1",
            api_keys=["sk-aaaaaaaaaaaa", "sk-bbbbbbbbbbbb"],
            models=[ApiModelConfig("gpt-4o"), ApiModelConfig("gpt-4o-mini", enabled=False)],
        ),
        ApiProviderConfig(
            id="qwen", name="Qwen", base_url="https://dashscope.example/v1",
            api_keys=["q1"],
            models=[ApiModelConfig("qwen-vl-max"), ApiModelConfig("qwen-vl-plus")],
        ),
        ApiProviderConfig(
            id="off", name="Disabled", base_url="https://off.example/v1",
            api_keys=["x"], models=[ApiModelConfig("m")], enabled=False,
        ),
    ])


def test_flattens_provider_model_key_triples():
    entries = build_model_pool(two_providers())
    assert [(e.provider_id, e.model, e.api_key) for e in entries] == [
        ("openai", "gpt-4o", "sk-aaaaaaaaaaaa"),
        ("openai", "gpt-4o", "sk-bbbbbbbbbbbb"),
        ("qwen", "qwen-vl-max", "q1"),
        ("qwen", "qwen-vl-plus", "q1"),
    ]
    assert entries[0].entry_id == "openai::gpt-4o::sk-aaaaaaaaaaaa"
    assert entries[0].target == "openai::gpt-4o"


def test_skips_unusable_providers_and_duplicates():
    api = ApiConfig(providers=[
        ApiProviderConfig(id="a", name="A", base_url="  ", api_keys=["k"], models=[ApiModelConfig("m")]),
        ApiProviderConfig(id="b", name="B", base_url="u", api_keys=[" ", ""], models=[ApiModelConfig("m")]),
        ApiProviderConfig(id="c", name="C", base_url="u", api_keys=["k"], models=[ApiModelConfig(" ")]),
        ApiProviderConfig(id="d", name="D", base_url="u", api_keys=["k", "k"], models=[ApiModelConfig("m")]),
    ])
    entries = build_model_pool(api)
    assert [e.entry_id for e in entries] == ["d::m::k"]


def test_legacy_fallback_when_no_provider_is_usable():
    api = ApiConfig(base_url="https://legacy/v1", api_key=["k1", " k2 ", ""], model="gpt-4o",
                    providers=[ApiProviderConfig(id="x", name="X", base_url="", api_keys=[], models=[])])
    entries = build_model_pool(api)
    assert [e.api_key for e in entries] == ["k1", "k2"]
    assert all(e.provider_id == "legacy" and e.provider_name == "OpenAI Compatible" for e in entries)


def test_legacy_single_key_string():
    entries = build_model_pool(ApiConfig(api_key="only", model="m", provider="Local"))
    assert len(entries) == 1
    assert entries[0].provider_name == "Local"


def test_empty_configuration_yields_empty_pool():
    assert build_model_pool(ApiConfig(api_key="")) == []


@pytest.mark.parametrize("target", ["all", "qwen::qwen-vl-max", "openai::gpt-4o"])
def test_every_entry_visited_once_per_cycle(target):
    pool = ModelPool.from_config(two_providers())
    sub_pool = pool.for_target(target)
    for _ in range(3):
        cycle = [pool.next_entry(target) for _ in sub_pool]
        assert sorted(e.entry_id for e in cycle) == sorted(e.entry_id for e in sub_pool)


def test_targets_have_independent_cursors():
    pool = ModelPool.from_config(two_providers())
    assert pool.next_entry("all").api_key == "sk-aaaaaaaaaaaa"
    assert pool.next_entry("openai::gpt-4o").api_key == "sk-aaaaaaaaaaaa"
    assert pool.next_entry("all").api_key == "sk-bbbbbbbbbbbb"
    assert pool.next_entry("openai::gpt-4o").api_key == "sk-bbbbbbbbbbbb"
    assert pool.next_entry("openai::gpt-4o").api_key == "sk-aaaaaaaaaaaa"


def test_empty_sub_pool_is_an_error():
    pool = ModelPool.from_config(two_providers())
    assert pool.for_target("nope::model") == []
    with pytest.raises(NoModelAvailableError):
        pool.next_entry("nope::model")


def test_targets_listing():
    pool = ModelPool.from_config(two_providers())
    assert pool.targets() == ["all", "openai::gpt-4o", "qwen::qwen-vl-max", "qwen::qwen-vl-plus"]


def test_status_report_masks_keys():
    report = ModelPool.from_config(two_providers()).status_report()
    assert "模型池条目: 4" in report
    assert "sk-aaaaa****" in report
    assert "sk-aaaaaaaaaaaa" not in report
