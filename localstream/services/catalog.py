import logging
from typing import Any, Dict, List, Optional

from ..errors import UnknownTier
from ..models import QualityTier

logger = logging.getLogger(__name__)


class QualityTierCatalog:
    """Read-only mapping of tier id -> bitrate envelope, loaded once at startup."""

    def __init__(self, tiers: List[QualityTier], default_tier: Optional[str] = None):
        self._tiers: Dict[str, QualityTier] = {t.id: t for t in tiers}
        if default_tier is not None and default_tier not in self._tiers:
            raise UnknownTier(default_tier)
        self.default_tier = default_tier or next(iter(self._tiers), None)

    @classmethod
    def from_presets(cls, video: Dict[str, Any]) -> "QualityTierCatalog":
        tiers = [
            QualityTier.from_preset(tier_id, preset)
            for tier_id, preset in video.get("presets", {}).items()
        ]
        catalog = cls(tiers, video.get("defaultPreset"))
        logger.info("Quality tiers loaded: %s", ", ".join(catalog.ids()) or "none")
        return catalog

    def get(self, tier_id: str) -> Optional[QualityTier]:
        return self._tiers.get(tier_id)

    def require(self, tier_id: str) -> QualityTier:
        tier = self._tiers.get(tier_id)
        if tier is None:
            raise UnknownTier(tier_id)
        return tier

    def ids(self) -> List[str]:
        return list(self._tiers)

    def __contains__(self, tier_id) -> bool:
        return tier_id in self._tiers

    def __len__(self) -> int:
        return len(self._tiers)
