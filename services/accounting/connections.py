"""Accounting connection lifecycle.

One AccountingConnection exists per (company, provider) pair. It is created
on the first successful connect, updated on reconnect, and soft-deleted
with ``is_active=False`` on disconnect.

At most one connection per company is the default. Adapters do not enforce
this; callers go through set_default_connection(), which clears every
default of the company before setting the new one.
"""

import logging
import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from services.accounting.base import ConnectionMetadata, ProviderCredentials, utcnow
from services.accounting.factory import AccountingProvider

logger = logging.getLogger(__name__)


class AccountingConnection(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    company_id: str
    provider: AccountingProvider
    provider_company_id: str
    provider_company_name: str
    credentials: ProviderCredentials | None = None
    scopes: list[str] = Field(default_factory=list)
    is_active: bool = True
    is_default: bool = False
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def find_connection(
    connections: list[AccountingConnection],
    company_id: str,
    provider: AccountingProvider,
) -> AccountingConnection | None:
    for connection in connections:
        if connection.company_id == company_id and connection.provider == provider:
            return connection
    return None


def upsert_connection(
    connections: list[AccountingConnection],
    company_id: str,
    provider: AccountingProvider,
    metadata: ConnectionMetadata,
) -> AccountingConnection:
    """Record a successful connect, creating or reactivating the connection.

    Args:
        connections: Stored connections (mutated in place)
        company_id: Owning company
        provider: Connected provider
        metadata: Result of the adapter's connect()

    Returns:
        The created or updated connection
    """
    existing = find_connection(connections, company_id, provider)
    if existing is None:
        connection = AccountingConnection(
            company_id=company_id,
            provider=provider,
            provider_company_id=metadata.provider_company_id,
            provider_company_name=metadata.provider_company_name,
            credentials=metadata.credentials,
            scopes=metadata.scopes,
        )
        connections.append(connection)
        logger.info(f"Created {provider.value} connection {connection.id} for {company_id}")
        return connection

    existing.provider_company_id = metadata.provider_company_id
    existing.provider_company_name = metadata.provider_company_name
    existing.credentials = metadata.credentials
    existing.scopes = metadata.scopes
    existing.is_active = True
    existing.last_error = None
    existing.updated_at = utcnow()
    logger.info(f"Reconnected {provider.value} connection {existing.id} for {company_id}")
    return existing


def deactivate_connection(connection: AccountingConnection) -> None:
    """Soft-delete a connection after disconnect; it stops being the default."""
    connection.is_active = False
    connection.is_default = False
    connection.credentials = None
    connection.updated_at = utcnow()


def set_default_connection(
    connections: list[AccountingConnection],
    connection_id: str,
) -> AccountingConnection:
    """Make one active connection its company's default.

    Raises:
        ValueError: If the connection is unknown or inactive
    """
    target = next((c for c in connections if c.id == connection_id), None)
    if target is None or not target.is_active:
        raise ValueError(f"No active accounting connection with id '{connection_id}'")

    for connection in connections:
        if connection.company_id == target.company_id and connection.is_default:
            connection.is_default = False
            connection.updated_at = utcnow()

    target.is_default = True
    target.updated_at = utcnow()
    return target


def get_default_connection(
    connections: list[AccountingConnection], company_id: str
) -> AccountingConnection | None:
    for connection in connections:
        if connection.company_id == company_id and connection.is_active and connection.is_default:
            return connection
    return None
