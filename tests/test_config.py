from coze.config import DEFAULT_MODELS, AppConfig, load_config


def test_partial_file_keeps_defaults(tmp_path):
    path = tmp_path / "coze.yaml"
    path.write_text(
        "app:\n"
        "  port: 9000\n"
        "  log_level: debug\n"
        "generation_defaults:\n"
        "  mode: Creative\n"
        "  seed: 7\n"
        "fuzzy:\n"
        "  min_coverage: 0.5\n",
        encoding="utf-8",
    )
    cfg = load_config(str(path))
    assert cfg.app.port == 9000
    assert cfg.app.log_level == "DEBUG"
    assert cfg.app.host == AppConfig.host
    assert cfg.app.stall_timeout_s == 300.0
    assert cfg.generation_defaults.mode == "creative"
    assert cfg.generation_defaults.seed == 7
    assert cfg.generation_defaults.repeat_penalty is None
    assert cfg.fuzzy.min_coverage == 0.5
    assert cfg.fuzzy.limit == 20


def test_missing_models_fall_back_to_catalog(tmp_path):
    path = tmp_path / "coze.yaml"
    path.write_text("", encoding="utf-8")
    cfg = load_config(str(path))
    assert [m.key for m in cfg.models] == [m.key for m in DEFAULT_MODELS]


def test_models_section(tmp_path):
    path = tmp_path / "coze.yaml"
    path.write_text(
        "models:\n"
        "  - key: tiny\n"
        "    local_path: ~/models/tiny\n"
        "    size_bytes: 1000\n"
        "  - key: hub\n"
        "    display_name: Hub Model\n"
        "    repo_id: org/hub-model\n"
        "    revision: main\n"
        "    family_hint: mistral\n",
        encoding="utf-8",
    )
    tiny, hub = load_config(str(path)).models
    assert tiny.display_name == "tiny"
    assert tiny.local_path == "~/models/tiny"
    assert tiny.size_bytes == 1000
    assert hub.repo_id == "org/hub-model"
    assert hub.revision == "main"
    assert hub.family_hint == "mistral"
