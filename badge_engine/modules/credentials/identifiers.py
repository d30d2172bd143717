"""Hosted IRIs for engine resources."""

from __future__ import annotations

from uuid import UUID

from badge_engine.modules.credentials.schemas import IssuerRecord


class ResourceUrls:
    """Build the public IRIs documents refer to.

    All IRIs hang off a single public base URL so that hosted OB2
    verification and status list resolution point at the same deployment.
    """

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    def issuer(self, issuer_id: UUID) -> str:
        return f"{self._base_url}/issuers/{issuer_id}"

    def issuer_iri(self, issuer: IssuerRecord) -> str:
        """The IRI documents use as ``issuer``: the DID when set, else the hosted profile."""
        return issuer.did or self.issuer(issuer.id)

    def achievement(self, achievement_id: UUID) -> str:
        return f"{self._base_url}/achievements/{achievement_id}"

    def badge_class(self, achievement_id: UUID) -> str:
        return f"{self._base_url}/badges/{achievement_id}"

    def assertion(self, assertion_id: UUID) -> str:
        return f"{self._base_url}/assertions/{assertion_id}"

    def status_list(self, issuer_id: UUID) -> str:
        return f"{self._base_url}/status-lists/{issuer_id}"

    def status_list_entry(self, issuer_id: UUID, index: int) -> str:
        return f"{self.status_list(issuer_id)}#{index}"
