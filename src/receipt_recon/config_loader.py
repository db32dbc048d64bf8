import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

from receipt_recon.taxonomy import MerchantTaxonomy, default_taxonomy

load_dotenv()


DEFAULTS = {
    "tolerances": {"days": 3, "amount_ratio": "0.01"},
    "thresholds": {"min_confidence": 80.0},
    "batch": {"receipt_cap": 1000, "max_workers": 4, "lookback_days": 30},
    "outbox": {"max_attempts": 5},
    "erp": {"timeout_seconds": 10, "max_retries": 3, "backoff_factor": 1.0},
}


@dataclass
class MatchingConfig:
    date_tolerance_days: int = 3
    amount_tolerance_ratio: Decimal = Decimal("0.01")
    min_confidence_score: float = 80.0
    batch_receipt_cap: int = 1000
    max_workers: int = 4
    lookback_days: int = 30
    outbox_max_attempts: int = 5
    erp_base_url: Optional[str] = None
    erp_api_key: Optional[str] = None
    erp_timeout_seconds: float = 10
    erp_max_retries: int = 3
    erp_backoff_factor: float = 1.0
    db_path: str = "receipt_recon.db"
    taxonomy: MerchantTaxonomy = field(default_factory=default_taxonomy)

    @classmethod
    def from_dict(cls, cfg: Dict) -> "MatchingConfig":
        tol = cfg.get("tolerances", {})
        batch = cfg.get("batch", {})
        erp = cfg.get("erp", {})
        taxonomy = (
            MerchantTaxonomy.from_dict(cfg["taxonomy"]) if cfg.get("taxonomy") else default_taxonomy()
        )
        return cls(
            date_tolerance_days=int(tol.get("days", 3)),
            amount_tolerance_ratio=Decimal(str(tol.get("amount_ratio", "0.01"))),
            min_confidence_score=float(cfg.get("thresholds", {}).get("min_confidence", 80.0)),
            batch_receipt_cap=int(batch.get("receipt_cap", 1000)),
            max_workers=int(batch.get("max_workers", 4)),
            lookback_days=int(batch.get("lookback_days", 30)),
            outbox_max_attempts=int(cfg.get("outbox", {}).get("max_attempts", 5)),
            erp_base_url=os.getenv("ERP_BASE_URL") or erp.get("base_url"),
            erp_api_key=os.getenv("ERP_API_KEY") or erp.get("api_key"),
            erp_timeout_seconds=float(erp.get("timeout_seconds", 10)),
            erp_max_retries=int(erp.get("max_retries", 3)),
            erp_backoff_factor=float(erp.get("backoff_factor", 1.0)),
            db_path=os.getenv("RECEIPT_RECON_DB", cfg.get("db_path", "receipt_recon.db")),
            taxonomy=taxonomy,
        )


def _default_path() -> str:
    return os.getenv(
        "RECEIPT_RECON_CONFIG",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "matching.yml"),
    )


def load_raw_config(path: Optional[str] = None) -> dict:
    try:
        with open(path or _default_path(), "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return dict(DEFAULTS)

    # shallow merge defaults
    merged = dict(DEFAULTS)
    for k, v in cfg.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def load_matching_config(path: Optional[str] = None) -> MatchingConfig:
    return MatchingConfig.from_dict(load_raw_config(path))
