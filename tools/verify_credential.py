"""Verify Open Badges credentials against the engine database (for operators and CI)."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any
from uuid import UUID

from badge_engine.core.errors import BadgeEngineError
from badge_engine.core.logging import configure_logging
from badge_engine.db.session import close_db, get_session_factory, init_db
from badge_engine.modules.credentials.formats import (
    CredentialFormat,
    VerifiableCredential,
    wrap,
)
from badge_engine.modules.credentials.service import CredentialService
from badge_engine.modules.credentials.sql_repository import SqlAlchemyCredentialStore
from badge_engine.modules.credentials.status_list import decode_status_list_credential


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check structure, proof and revocation status of badge credentials."
    )
    parser.add_argument(
        "documents",
        nargs="*",
        type=Path,
        help="JSON files holding OB2 assertions or OB3 credentials.",
    )
    parser.add_argument(
        "--assertion-id",
        action="append",
        default=[],
        help="Stored assertion UUID to verify. May be repeated.",
    )
    parser.add_argument(
        "--format",
        choices=[fmt.value for fmt in CredentialFormat],
        default=None,
        help="Rendering to verify for --assertion-id (default: stored OB3, else OB2).",
    )
    parser.add_argument(
        "--status-list",
        type=Path,
        default=None,
        help="Check the proof of a BitstringStatusListCredential file and list its set bits.",
    )
    return parser.parse_args()


async def _summarize_status_list(service: CredentialService, path: Path) -> dict[str, Any]:
    """Proof check and set bits of a list; the bits are untrusted unless ``proof_valid``."""
    document = json.loads(path.read_text(encoding="utf-8"))
    proof = await service.proofs.check(document)
    bits = decode_status_list_credential(document)
    revoked = [index for index in range(len(bits)) if bits.get(index)]
    return {
        "file": str(path),
        "id": document.get("id"),
        "proof_valid": proof.valid,
        "proof_error": proof.error,
        "length": len(bits),
        "revoked_indices": revoked,
    }


async def _main() -> int:
    args = _parse_args()
    if not args.documents and not args.assertion_id and args.status_list is None:
        raise SystemExit("Provide credential files, --assertion-id or --status-list")

    configure_logging()
    summary: dict[str, Any] = {"results": [], "errors": []}

    await init_db()
    try:
        service = CredentialService.from_settings(SqlAlchemyCredentialStore(get_session_factory()))
        if args.status_list is not None:
            try:
                listing = await _summarize_status_list(service, args.status_list)
            except (OSError, json.JSONDecodeError, BadgeEngineError) as exc:
                summary["errors"].append({"file": str(args.status_list), "error": str(exc)})
            else:
                summary["status_list"] = listing
                if not listing["proof_valid"]:
                    summary["errors"].append(
                        {"file": str(args.status_list), "error": listing["proof_error"]}
                    )

        for path in args.documents:
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                summary["errors"].append({"file": str(path), "error": str(exc)})
                continue
            result = await service.verify(document)
            wrapped = wrap(document) if isinstance(document, dict) else None
            summary["results"].append(
                {
                    "file": str(path),
                    "format": wrapped.format.value if wrapped else None,
                    "signed": isinstance(wrapped, VerifiableCredential) and wrapped.signed,
                    **result.model_dump(),
                }
            )

        target = CredentialFormat(args.format) if args.format else None
        for raw_id in args.assertion_id:
            try:
                assertion_id = UUID(raw_id)
            except ValueError:
                summary["errors"].append({"assertion_id": raw_id, "error": "not a UUID"})
                continue
            result = await service.verify_assertion(assertion_id, target)
            summary["results"].append({"assertion_id": raw_id, **result.model_dump()})
    finally:
        await close_db()

    print(json.dumps(summary, indent=2))
    failed = summary["errors"] or any(not item["valid"] for item in summary["results"])
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
