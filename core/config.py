"""Runtime configuration.

Settings come from environment variables. A `.env` file at the project
root is loaded first if present.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PROJECT_ROOT = Path(__file__).resolve().parents[1]

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Engine settings."""
    db_path: Path = Field(default=PROJECT_ROOT / "vendor_bills.db", description="Bills and aliases database")
    catalog_db_path: Optional[Path] = Field(default=None, description="Catalog database (defaults to a sibling of db_path)")
    catalog_timeout_seconds: float = Field(default=5.0, gt=0, description="Bound on every catalog call")
    suggest_limit: int = Field(default=5, ge=1, description="Default number of match candidates")
    cost_policy: str = Field(default="average_cost", description="Default cost policy for posting")
    totals_tolerance_pct: float = Field(default=1.0, ge=0, description="Header vs line total tolerance")
    audit_dir: Optional[Path] = Field(default=None, description="Directory for JSON audit files")
    log_json: bool = Field(default=False, description="Emit JSON log lines")
    log_level: str = Field(default="INFO")

    @property
    def effective_catalog_db_path(self) -> Path:
        # Must not be db_path: the bill commit runs inside an open catalog write transaction
        return self.catalog_db_path or self.db_path.with_name(f"{self.db_path.stem}_catalog.db")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        values = {}
        if os.getenv("RECON_DB_PATH"):
            values["db_path"] = Path(os.environ["RECON_DB_PATH"])
        if os.getenv("RECON_CATALOG_DB_PATH"):
            values["catalog_db_path"] = Path(os.environ["RECON_CATALOG_DB_PATH"])
        if os.getenv("RECON_CATALOG_TIMEOUT_SECONDS"):
            values["catalog_timeout_seconds"] = float(os.environ["RECON_CATALOG_TIMEOUT_SECONDS"])
        if os.getenv("RECON_SUGGEST_LIMIT"):
            values["suggest_limit"] = int(os.environ["RECON_SUGGEST_LIMIT"])
        if os.getenv("RECON_COST_POLICY"):
            values["cost_policy"] = os.environ["RECON_COST_POLICY"]
        if os.getenv("RECON_TOTALS_TOLERANCE_PCT"):
            values["totals_tolerance_pct"] = float(os.environ["RECON_TOTALS_TOLERANCE_PCT"])
        if os.getenv("RECON_AUDIT_DIR"):
            values["audit_dir"] = Path(os.environ["RECON_AUDIT_DIR"])
        values["log_json"] = _env_bool("RECON_LOG_JSON")
        values["log_level"] = os.getenv("RECON_LOG_LEVEL", "INFO").upper()
        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return Settings.from_env()
