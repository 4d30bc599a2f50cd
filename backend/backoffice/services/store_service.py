# Overview: Store lookups for currency and stock threshold configuration.

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import Store
from .errors import NotFoundError, ServiceError


@dataclass(frozen=True)
class CurrencyConfig:
    base: str
    supported: tuple[str, ...]

    def is_supported(self, currency: str) -> bool:
        return currency in self.supported


def get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store:
        raise NotFoundError("Store not found")
    return store


def get_currency_config(store_id: int) -> CurrencyConfig:
    store = get_store(store_id)
    return CurrencyConfig(base=store.currency.upper(), supported=tuple(store.supported_currency_list()))


def require_supported_currency(config: CurrencyConfig, currency) -> str:
    """Normalize a currency code and check it against the store config."""
    if not isinstance(currency, str) or not currency.strip():
        raise ServiceError("currency is required", reason_code="VALIDATION_ERROR")
    code = currency.strip().upper()
    if not config.is_supported(code):
        raise ServiceError(
            f"Currency {code} is not enabled for this store (supported: {', '.join(config.supported)})",
            reason_code="UNSUPPORTED_CURRENCY",
        )
    return code
