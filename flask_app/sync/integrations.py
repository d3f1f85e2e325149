"""
Integration setup, credential storage and CRM client construction.

API tokens are only ever held in memory between ``CredentialVault.decrypt``
and the outgoing request; the stored form is the envelope on
``IntegrationCredential``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask, current_app
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from flask_app.models import Integration, IntegrationCredential, IntegrationStatus, db
from flask_app.models.base import isoformat, utcnow
from flask_app.sync.client import CrmClient, CrmClientError
from flask_app.sync.pipeline.run_controller import IntegrationNotReady
from flask_app.sync.vault import CredentialVault, VaultError, get_vault

CONNECTION_TEST_ENTITY = "contacts"


def get_integration(integration_id: int, session: Session | None = None) -> Integration:
    session = session or db.session
    integration = session.get(Integration, integration_id)
    if integration is None:
        raise NoResultFound(f"Integration {integration_id} not found.")
    return integration


def create_integration(
    name: str,
    api_token: str,
    *,
    provider: str = "crm",
    vault: CredentialVault | None = None,
    session: Session | None = None,
) -> Integration:
    """Store a new integration and its encrypted token. Status starts DISCONNECTED."""

    session = session or db.session
    name = (name or "").strip()
    if not name:
        raise ValueError("Integration name is required.")
    if not api_token or not api_token.strip():
        raise ValueError("API token is required.")

    vault = vault or get_vault()
    credential = IntegrationCredential(envelope=vault.encrypt(api_token.strip()))
    session.add(credential)
    session.flush()

    integration = Integration(
        name=name,
        provider=(provider or "crm").strip().lower(),
        status=IntegrationStatus.DISCONNECTED,
        credentials_key=credential.key,
    )
    session.add(integration)
    session.commit()
    current_app.logger.info(
        "Created sync integration",
        extra={"sync_integration_id": integration.id, "sync_provider": integration.provider},
    )
    return integration


def rotate_credentials(
    integration_id: int,
    api_token: str,
    *,
    vault: CredentialVault | None = None,
    session: Session | None = None,
) -> Integration:
    """Replace the stored envelope and reset the integration to DISCONNECTED until re-tested."""

    session = session or db.session
    if not api_token or not api_token.strip():
        raise ValueError("API token is required.")
    integration = get_integration(integration_id, session)
    vault = vault or get_vault()
    envelope = vault.encrypt(api_token.strip())

    credential = IntegrationCredential.find_by_key(integration.credentials_key)
    if credential is None:
        credential = IntegrationCredential(envelope=envelope)
        session.add(credential)
        session.flush()
        integration.credentials_key = credential.key
    else:
        credential.envelope = envelope
        credential.rotated_at = utcnow()
    integration.status = IntegrationStatus.DISCONNECTED
    integration.last_error = None
    session.commit()
    current_app.logger.info("Rotated sync integration credentials", extra={"sync_integration_id": integration.id})
    return integration


def resolve_access_token(integration: Integration, *, vault: CredentialVault | None = None) -> str:
    """Decrypt the integration's token. Vault errors propagate to the caller."""
    credential = IntegrationCredential.find_by_key(integration.credentials_key)
    if credential is None:
        raise IntegrationNotReady(f"Integration {integration.id} has no stored credentials.")
    vault = vault or get_vault()
    return vault.decrypt(credential.envelope)


def ensure_ready(integration: Integration, *, vault: CredentialVault | None = None) -> None:
    """Raise unless a run may be started against ``integration``."""
    if integration.status == IntegrationStatus.ERROR:
        raise IntegrationNotReady(
            f"Integration {integration.id} is in ERROR state"
            + (f": {integration.last_error}" if integration.last_error else "")
            + ". Test the connection or re-enter credentials first."
        )
    resolve_access_token(integration, vault=vault)


def create_crm_client(
    integration: Integration,
    *,
    app: Flask | None = None,
    vault: CredentialVault | None = None,
) -> CrmClient:
    app = app or current_app._get_current_object()
    return CrmClient(
        base_url=app.config.get("SYNC_CRM_BASE_URL", ""),
        access_token=resolve_access_token(integration, vault=vault),
        timeout=app.config.get("SYNC_CRM_TIMEOUT_SECONDS", 30),
        logger=app.logger,
    )


def check_connection(
    integration_id: int,
    *,
    client_factory=create_crm_client,
    session: Session | None = None,
) -> dict[str, Any]:
    """Decrypt the token, fetch a single record and mark the integration ACTIVE or ERROR."""

    session = session or db.session
    integration = get_integration(integration_id, session)
    integration.last_tested_at = utcnow()
    try:
        client = client_factory(integration)
        page = client.fetch_page(CONNECTION_TEST_ENTITY, page=1, per_page=1)
    except (VaultError, IntegrationNotReady, CrmClientError) as exc:
        integration.status = IntegrationStatus.ERROR
        integration.last_error = str(exc)
        session.commit()
        current_app.logger.warning(
            "Sync integration connection test failed",
            extra={"sync_integration_id": integration.id, "sync_error": str(exc)},
        )
        return {"ok": False, "status": integration.status.value, "error": str(exc)}

    integration.status = IntegrationStatus.ACTIVE
    integration.last_error = None
    session.commit()
    return {
        "ok": True,
        "status": integration.status.value,
        "totalCount": page.total_count,
        "testedAt": isoformat(integration.last_tested_at),
    }


def serialize_integration(integration: Integration) -> dict[str, Any]:
    return {
        "id": integration.id,
        "name": integration.name,
        "provider": integration.provider,
        "status": integration.status.value if integration.status else None,
        "hasCredentials": bool(integration.credentials_key),
        "lastSyncTimestamps": dict(integration.last_sync_timestamps or {}),
        "lastTestedAt": isoformat(integration.last_tested_at),
        "lastError": integration.last_error,
        "createdAt": isoformat(integration.created_at),
        "updatedAt": isoformat(integration.updated_at),
    }
