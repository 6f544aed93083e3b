"""Factory for creating accounting adapters.

Provider names are parsed into the AccountingProvider enum once and
dispatched through a registry of adapter classes.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging
from enum import Enum

from services.accounting.base import AccountingAdapter, ProviderCredentials
from services.accounting.excel import ExcelAdapter
from services.accounting.quickbooks import QuickBooksAdapter
from services.shared.config import Settings
from services.shared.exceptions import UnsupportedProviderError

logger = logging.getLogger(__name__)


class AccountingProvider(str, Enum):
    QUICKBOOKS = "quickbooks"
    XERO = "xero"
    WAVE = "wave"
    EXCEL = "excel"


class AdapterRegistry:
    """Registry of implemented accounting adapters.

    Providers known to the enum but absent from the registry (Xero, Wave)
    are rejected the same way as unknown names.
    """

    _adapters: dict[AccountingProvider, type[AccountingAdapter]] = {
        AccountingProvider.QUICKBOOKS: QuickBooksAdapter,
        AccountingProvider.EXCEL: ExcelAdapter,
    }

    @classmethod
    def register(cls, provider: AccountingProvider, adapter_class: type[AccountingAdapter]) -> None:
        cls._adapters[provider] = adapter_class
        logger.info(f"Registered accounting adapter: {provider.value}")

    @classmethod
    def get_adapter_class(cls, provider: str | AccountingProvider) -> type[AccountingAdapter]:
        """Resolve a provider name to its adapter class.

        Args:
            provider: Provider enum member or case-insensitive name

        Returns:
            Adapter class

        Raises:
            UnsupportedProviderError: If the provider is unknown or not implemented
        """
        try:
            key = AccountingProvider(provider.lower() if isinstance(provider, str) else provider)
        except ValueError:
            raise UnsupportedProviderError(str(provider), cls.list_providers()) from None

        adapter_class = cls._adapters.get(key)
        if adapter_class is None:
            raise UnsupportedProviderError(key.value, cls.list_providers())
        return adapter_class

    @classmethod
    def list_providers(cls) -> list[str]:
        return [provider.value for provider in cls._adapters]


def get_accounting_adapter(
    provider: str | AccountingProvider,
    connection_id: str,
    company_id: str,
    credentials: ProviderCredentials | None = None,
    settings: Settings | None = None,
) -> AccountingAdapter:
    """Create a short-lived adapter for one connection.

    Args:
        provider: Provider name, e.g. 'quickbooks'
        connection_id: Local connection identifier
        company_id: Owning company
        credentials: Stored credentials to inject
        settings: Application settings

    Returns:
        Adapter instance

    Raises:
        UnsupportedProviderError: For unknown or unimplemented providers

    Example:
        >>> adapter = get_accounting_adapter("excel", "conn-1", "company-1")
        >>> adapter.get_connection_status().is_connected
        True
    """
    adapter_class = AdapterRegistry.get_adapter_class(provider)
    return adapter_class(connection_id, company_id, credentials=credentials, settings=settings)
