"""
Local status cache - last known server answer, for the UI only.

The cache is write-through and never authoritative: a server answer always
replaces it, and nothing reads it to decide whether to grant access.
"""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError
from structlog import get_logger

from adfree.models.domain import DerivedStatus, ProductKind
from adfree.services.reconciliation import utc_now

logger = get_logger(__name__)


class CachedStatus(BaseModel):
    """Cached copy of a server-reported status."""

    is_ad_free: bool
    product_type: ProductKind | None = None
    expires_at: datetime | None = None
    active_product_ids: list[str] = Field(default_factory=list)
    last_checked: datetime

    def to_status(self) -> DerivedStatus:
        return DerivedStatus(
            is_ad_free=self.is_ad_free,
            product_type=self.product_type,
            expires_at=self.expires_at,
            active_product_ids=tuple(self.active_product_ids),
        )


class StatusCache:
    """JSON file holding the last server-reported status."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def read(self) -> CachedStatus | None:
        if not self._path.exists():
            return None
        try:
            return CachedStatus.model_validate_json(self._path.read_bytes())
        except ValidationError:
            logger.warning("status_cache_unreadable", path=str(self._path))
            return None

    def write(self, status: DerivedStatus, checked_at: datetime | None = None) -> CachedStatus:
        cached = CachedStatus(
            is_ad_free=status.is_ad_free,
            product_type=status.product_type,
            expires_at=status.expires_at,
            active_product_ids=list(status.active_product_ids),
            last_checked=checked_at or utc_now(),
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(cached.model_dump_json(), encoding="utf-8")
        tmp_path.replace(self._path)
        return cached

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
