from decimal import Decimal

from receipt_recon.config_loader import load_matching_config, load_raw_config


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("ERP_BASE_URL", raising=False)
    monkeypatch.delenv("RECEIPT_RECON_DB", raising=False)
    cfg = load_matching_config(str(tmp_path / "none.yml"))
    assert cfg.date_tolerance_days == 3
    assert cfg.amount_tolerance_ratio == Decimal("0.01")
    assert cfg.min_confidence_score == 80.0
    assert cfg.batch_receipt_cap == 1000
    assert cfg.taxonomy.version == "default"


def test_yaml_overrides_are_merged(tmp_path, monkeypatch):
    monkeypatch.delenv("ERP_BASE_URL", raising=False)
    path = tmp_path / "matching.yml"
    path.write_text(
        "tolerances:\n  days: 5\n"
        "erp:\n  base_url: https://erp.local\n"
        "taxonomy:\n  version: v2\n  categories:\n    PARKING:\n"
        "      patterns: [주차장]\n      account_codes: ['51320']\n",
        encoding="utf-8",
    )
    raw = load_raw_config(str(path))
    assert raw["tolerances"] == {"days": 5, "amount_ratio": "0.01"}

    cfg = load_matching_config(str(path))
    assert cfg.date_tolerance_days == 5
    assert cfg.erp_base_url == "https://erp.local"
    assert cfg.taxonomy.version == "v2"
    assert cfg.taxonomy.classify("시청 주차장") == "PARKING"


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("ERP_BASE_URL", "https://erp.env")
    monkeypatch.setenv("ERP_API_KEY", "k")
    monkeypatch.setenv("RECEIPT_RECON_DB", str(tmp_path / "x.db"))
    cfg = load_matching_config(str(tmp_path / "none.yml"))
    assert cfg.erp_base_url == "https://erp.env"
    assert cfg.erp_api_key == "k"
    assert cfg.db_path.endswith("x.db")
