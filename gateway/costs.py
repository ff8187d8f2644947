import logging
from dataclasses import dataclass
from typing import Optional

from ledger.errors import FeatureDisabled, InvalidAmount
from ledger.models import AppConfig
from ledger.store import InMemoryStorage

from .identity import Identity, require_admin

logger = logging.getLogger(__name__)

DEFAULT_FEATURE_COST = 1

# Historical display names -> canonical name. Reporting only.
FEATURE_ALIASES: dict[str, str] = {
    "Model Shot": "Pixa Model Shots",
    "Pixa Model Shot": "Pixa Model Shots",
    "Thumbnail Studio": "Pixa Thumbnail Pro",
    "Magic Realty": "Pixa Realty Ads",
    "Magic Interior": "Pixa Interior Design",
    "CaptionAI": "Pixa Caption Pro",
}

# Substring matches for names that carried suffixes over time.
FEATURE_ALIAS_FRAGMENTS: list[tuple[tuple[str, ...], str]] = [
    (("Thumbnail Studio", "Pixa Thumbnail Pro"), "Pixa Thumbnail Pro"),
    (("Pixa Realty Ads",), "Pixa Realty Ads"),
    (("Merchant Studio", "Ecommerce Kit"), "Pixa Ecommerce Kit"),
    (("Magic Ads", "Pixa AdMaker", "Brand Stylist"), "Pixa AdMaker"),
    (("Magic Soul", "Pixa Together"), "Pixa Together"),
    (("Pixa Caption Pro", "CaptionAI"), "Pixa Caption Pro"),
]


def canonical_feature_name(feature: str) -> str:
    if feature in FEATURE_ALIASES:
        return FEATURE_ALIASES[feature]
    for fragments, canonical in FEATURE_ALIAS_FRAGMENTS:
        if any(fragment in feature for fragment in fragments):
            return canonical
    return feature.replace("Admin Grant", "MagicPixa Grant")


@dataclass(frozen=True)
class CostQuote:
    feature: str
    canonical_feature: str
    cost: int
    listed: bool


class FeatureCostResolver:
    """Prices features from the admin-editable app config.

    The config is re-read on every call, so admin edits apply to the next
    request.
    """

    def __init__(self, storage: InMemoryStorage, default_cost: int = DEFAULT_FEATURE_COST):
        self.storage = storage
        self.default_cost = default_cost

    def quote(self, feature: str, override: Optional[int] = None) -> CostQuote:
        config = self.storage.get_app_config()
        canonical = canonical_feature_name(feature)

        if not self._is_enabled(config, feature, canonical):
            raise FeatureDisabled(f"{feature} is currently disabled")

        for key in (feature, canonical):
            if key in config.feature_costs:
                if override is not None and override != config.feature_costs[key]:
                    logger.warning("Ignoring cost override %s for listed feature %s", override, key)
                return CostQuote(feature, canonical, config.feature_costs[key], listed=True)

        cost = override if override is not None else self.default_cost
        return CostQuote(feature, canonical, cost, listed=False)

    def resolve(self, feature: str, override: Optional[int] = None) -> int:
        return self.quote(feature, override).cost

    def is_enabled(self, feature: str) -> bool:
        return self._is_enabled(self.storage.get_app_config(), feature, canonical_feature_name(feature))

    def set_cost(self, admin: Identity, feature: str, cost: int) -> AppConfig:
        require_admin(admin)
        if cost < 0:
            raise InvalidAmount(f"Cost must be non-negative, got {cost}")

        def mutate(config: AppConfig) -> None:
            config.feature_costs[feature] = cost

        with self.storage.transaction() as txn:
            config = self.storage.update_app_config(mutate)
            txn.audit(admin.account_id, "set_feature_cost", amount=cost, details=feature)
        return config

    def set_enabled(self, admin: Identity, feature: str, enabled: bool) -> AppConfig:
        require_admin(admin)

        def mutate(config: AppConfig) -> None:
            config.feature_toggles[feature] = enabled

        with self.storage.transaction() as txn:
            config = self.storage.update_app_config(mutate)
            txn.audit(
                admin.account_id, "set_feature_enabled",
                details=f"{feature}: {'enabled' if enabled else 'disabled'}",
            )
        return config

    def _is_enabled(self, config: AppConfig, feature: str, canonical: str) -> bool:
        for key in (feature, canonical):
            if key in config.feature_toggles:
                return config.feature_toggles[key]
        return True
