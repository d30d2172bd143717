"""Structure, signature and revocation checks over OB2 and OB3 documents."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from badge_engine.core.crypto.canonicalization import PROOF_FIELD
from badge_engine.core.errors import BadgeEngineError
from badge_engine.core.logging import get_logger
from badge_engine.modules.credentials.builder import CredentialBuilder
from badge_engine.modules.credentials.formats import (
    OB3_CREDENTIAL_TYPES,
    VC_V1_CONTEXT,
    VC_V2_CONTEXT,
    CredentialFormat,
    classify,
    declared_contexts,
    document_issuer,
)
from badge_engine.modules.credentials.proofs import ProofEngine
from badge_engine.modules.credentials.repository import CredentialStore
from badge_engine.modules.credentials.schemas import VerificationChecks, VerificationResult
from badge_engine.modules.credentials.status_list import StatusListManager

logger = get_logger(__name__)

_OB2_REQUIRED = ("id", "recipient", "badge", "issuedOn", "verification")


def _types(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return []


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _ob2_structure_problems(document: Mapping[str, Any]) -> list[str]:
    problems = [field for field in _OB2_REQUIRED if field not in document]
    if "Assertion" not in _types(document.get("type")):
        problems.append("type")
    recipient = document.get("recipient")
    if isinstance(recipient, Mapping):
        problems.extend(
            f"recipient.{field}"
            for field in ("type", "identity")
            if not isinstance(recipient.get(field), str)
        )
    elif "recipient" in document:
        problems.append("recipient")
    badge = document.get("badge")
    if "badge" in document and not isinstance(badge, (str, Mapping)):
        problems.append("badge")
    verification = document.get("verification")
    if "verification" in document and not (
        isinstance(verification, Mapping) and isinstance(verification.get("type"), str)
    ):
        problems.append("verification.type")
    if "issuedOn" in document and _parse_datetime(document.get("issuedOn")) is None:
        problems.append("issuedOn")
    return problems


def _ob3_structure_problems(document: Mapping[str, Any], now: datetime) -> list[str]:
    problems: list[str] = []
    contexts = declared_contexts(document)
    if not contexts or contexts[0] not in (VC_V2_CONTEXT, VC_V1_CONTEXT):
        problems.append("@context")
    types = _types(document.get("type"))
    if "VerifiableCredential" not in types or not OB3_CREDENTIAL_TYPES.intersection(types):
        problems.append("type")
    if not isinstance(document.get("id"), str):
        problems.append("id")
    if document_issuer(document) is None:
        problems.append("issuer")

    valid_from = document.get("validFrom", document.get("issuanceDate"))
    if _parse_datetime(valid_from) is None:
        problems.append("validFrom")
    valid_until = document.get("validUntil", document.get("expirationDate"))
    if valid_until is not None:
        until = _parse_datetime(valid_until)
        if until is None:
            problems.append("validUntil")
        elif until < now:
            problems.append("validUntil (expired)")

    subject = document.get("credentialSubject")
    if not isinstance(subject, Mapping):
        problems.append("credentialSubject")
    elif not isinstance(subject.get("achievement"), Mapping):
        problems.append("credentialSubject.achievement")
    return problems


class VerificationOrchestrator:
    """Run all three checks on a document and collect one error per failure.

    Every check runs regardless of the others' outcome, and nothing here
    raises: failures of collaborators are reported as check failures.
    """

    def __init__(
        self,
        store: CredentialStore,
        proofs: ProofEngine,
        status_lists: StatusListManager,
        builder: CredentialBuilder,
    ) -> None:
        self._store = store
        self._proofs = proofs
        self._status_lists = status_lists
        self._builder = builder

    async def verify_document(self, document: Any) -> VerificationResult:
        if not isinstance(document, Mapping):
            return VerificationResult(
                valid=False,
                checks=VerificationChecks(structure=False, signature=False, revocation=False),
                errors=["structure: document is not a JSON object"],
            )

        fmt = classify(document)
        errors: list[str] = []

        structure_error = self.structural_check(document, fmt)
        structure = structure_error is None
        if structure_error:
            errors.append(structure_error)

        signature, signature_error = await self._guarded(
            "signature", self.signature_check(document, fmt, structure)
        )
        if signature_error:
            errors.append(signature_error)

        revocation, revocation_error = await self._guarded(
            "revocation", self.revocation_check(document, fmt)
        )
        if revocation_error:
            errors.append(revocation_error)

        result = VerificationResult.from_checks(
            structure=structure, signature=signature, revocation=revocation, errors=errors
        )
        logger.info(
            "credential_verified",
            credential_id=document.get("id") if isinstance(document.get("id"), str) else None,
            format=fmt.value if fmt else None,
            valid=result.valid,
            structure=structure,
            signature=signature,
            revocation=revocation,
        )
        return result

    async def verify_reference(
        self, assertion_id: UUID, target_format: CredentialFormat | None = None
    ) -> VerificationResult:
        """Verify the current document of a stored assertion.

        Without ``target_format`` the stored signed OB3 document is checked
        when one exists, else the hosted OB2 rendering.
        """
        try:
            assertion = await self._store.get_assertion(assertion_id)
            issuer = await self._store.get_issuer(assertion.issuer_id) if assertion else None
            if assertion is None or issuer is None or not assertion.issued:
                return _unresolvable(f"assertion {assertion_id} not found")
            if target_format is CredentialFormat.OB3 or (
                target_format is None and assertion.document is not None
            ):
                if assertion.document is None:
                    return _unresolvable(f"assertion {assertion_id} has no signed OB3 document")
                document: dict[str, Any] = assertion.document
            else:
                built = await self._builder.build(assertion, issuer, CredentialFormat.OB2)
                document = built.document
        except BadgeEngineError as exc:
            return _unresolvable(str(exc))
        return await self.verify_document(document)

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def structural_check(
        self, document: Mapping[str, Any], fmt: CredentialFormat | None
    ) -> str | None:
        """Return an error naming the offending fields, or ``None`` if well-formed."""
        if fmt is CredentialFormat.OB2:
            problems = _ob2_structure_problems(document)
        elif fmt is CredentialFormat.OB3:
            problems = _ob3_structure_problems(document, datetime.now(UTC))
        else:
            return (
                "structure: unrecognized credential format "
                f"(@context: {document.get('@context')!r})"
            )
        if problems:
            return f"structure: invalid or missing {', '.join(problems)}"
        return None

    async def signature_check(
        self,
        document: Mapping[str, Any],
        fmt: CredentialFormat | None,
        structure_ok: bool,
    ) -> tuple[bool, str | None]:
        if fmt is CredentialFormat.OB2:
            # hosted assertions carry no proof; trust rests on the hosting endpoint
            if structure_ok:
                return True, None
            return False, "signature: hosted assertion is not well-formed"
        if fmt is None and PROOF_FIELD not in document:
            return False, "signature: no verifiable proof for unrecognized format"
        check = await self._proofs.check(document)
        if check.valid:
            return True, None
        return False, f"signature: {check.error}"

    async def revocation_check(
        self, document: Mapping[str, Any], fmt: CredentialFormat | None
    ) -> tuple[bool, str | None]:
        if fmt is CredentialFormat.OB2:
            if document.get("revoked") is True:
                reason = document.get("revocationReason")
                suffix = f" ({reason})" if isinstance(reason, str) and reason else ""
                return False, f"revocation: assertion has been revoked{suffix}"
            return True, None

        entry = document.get("credentialStatus")
        if entry is None:
            if fmt is CredentialFormat.OB3:
                return False, "revocation: credentialStatus is missing"
            return True, None

        issuer_id, index = await self._status_lists.resolve_entry(entry)
        if await self._status_lists.is_revoked(issuer_id, index):
            return False, "revocation: credential has been revoked"
        return True, None

    async def _guarded(self, check: str, pending: Any) -> tuple[bool, str | None]:
        try:
            return await pending
        except BadgeEngineError as exc:
            return False, f"{check}: {exc}"
        except Exception as exc:
            logger.exception("verification_check_crashed", check=check)
            return False, f"{check}: verification error: {exc}"


def _unresolvable(reason: str) -> VerificationResult:
    return VerificationResult(
        valid=False,
        checks=VerificationChecks(structure=False, signature=False, revocation=False),
        errors=[f"structure: {reason}"],
    )
