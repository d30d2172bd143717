"""Tests for eddsa-jcs-2022 Data Integrity proofs."""

from __future__ import annotations

import copy
from typing import Any
from uuid import uuid4

import pytest

from badge_engine.core.crypto.multibase import encode_base58btc
from badge_engine.core.errors import NotFoundError, ValidationError
from badge_engine.modules.credentials.formats import OB3_CREDENTIAL_CONTEXT
from badge_engine.modules.credentials.proofs import (
    CRYPTOSUITE,
    PROOF_PURPOSE,
    PROOF_TYPE,
    ProofEngine,
    hash_data,
)
from badge_engine.modules.credentials.repository import InMemoryCredentialStore
from badge_engine.modules.credentials.schemas import IssuerRecord
from badge_engine.modules.credentials.service import CredentialService


def _document(service: CredentialService, issuer: IssuerRecord) -> dict[str, Any]:
    return {
        "@context": list(OB3_CREDENTIAL_CONTEXT),
        "id": "https://badges.example.org/assertions/demo",
        "type": ["VerifiableCredential", "OpenBadgeCredential"],
        "issuer": {"id": service.urls.issuer_iri(issuer), "type": ["Profile"], "name": "Ex"},
        "validFrom": "2024-01-01T00:00:00Z",
        "credentialSubject": {"achievement": {"id": "urn:a", "name": "Café Badge"}},
    }


@pytest.fixture
def proofs(service: CredentialService) -> ProofEngine:
    return service.proofs


class TestSign:
    @pytest.mark.asyncio
    async def test_attaches_data_integrity_proof(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        document = _document(service, issuer)
        signed = await proofs.sign(document, issuer.id)

        proof = signed["proof"]
        assert proof["type"] == PROOF_TYPE
        assert proof["cryptosuite"] == CRYPTOSUITE
        assert proof["proofPurpose"] == PROOF_PURPOSE
        assert proof["proofValue"].startswith("z")
        assert proof["verificationMethod"].startswith("did:key:z6Mk")
        assert proof["@context"] == document["@context"]
        assert proof["created"].endswith("Z")
        assert "proof" not in document

    @pytest.mark.asyncio
    async def test_refuses_already_signed_document(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        with pytest.raises(ValidationError, match="already carries a proof"):
            await proofs.sign(signed, issuer.id)

    @pytest.mark.asyncio
    async def test_refuses_foreign_issuer(
        self,
        proofs: ProofEngine,
        service: CredentialService,
        issuer: IssuerRecord,
        other_issuer: IssuerRecord,
    ) -> None:
        with pytest.raises(ValidationError, match="does not match signing issuer"):
            await proofs.sign(_document(service, issuer), other_issuer.id)

    @pytest.mark.asyncio
    async def test_unknown_issuer(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        with pytest.raises(NotFoundError):
            await proofs.sign(_document(service, issuer), uuid4())

    @pytest.mark.asyncio
    async def test_non_canonicalizable_document(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        document = _document(service, issuer)
        document["score"] = float("inf")
        with pytest.raises(ValidationError):
            await proofs.sign(document, issuer.id)


    @pytest.mark.asyncio
    async def test_sign_with_resolved_key_skips_storage(
        self,
        proofs: ProofEngine,
        service: CredentialService,
        store: InMemoryCredentialStore,
        issuer: IssuerRecord,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        key = await service.keys.ensure_key(issuer.id)

        async def unavailable(*_args: Any) -> None:
            raise AssertionError("storage touched while signing")

        monkeypatch.setattr(service.keys, "ensure_key", unavailable)
        monkeypatch.setattr(service.keys, "get_key", unavailable)
        monkeypatch.setattr(store, "get_issuer", unavailable)
        signed = proofs.sign_with_key(_document(service, issuer), issuer, key)
        monkeypatch.undo()

        assert signed["proof"]["verificationMethod"] == key.verification_method
        assert await proofs.verify(signed)

    @pytest.mark.asyncio
    async def test_sign_with_key_of_other_issuer(
        self,
        proofs: ProofEngine,
        service: CredentialService,
        issuer: IssuerRecord,
        other_issuer: IssuerRecord,
    ) -> None:
        foreign_key = await service.keys.ensure_key(other_issuer.id)
        with pytest.raises(ValidationError, match="does not belong to issuer"):
            proofs.sign_with_key(_document(service, issuer), issuer, foreign_key)


class TestVerify:
    @pytest.mark.asyncio
    async def test_round_trip(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        check = await proofs.check(signed)
        assert check.valid
        assert check.error is None
        assert check.issuer_id == issuer.id
        assert await proofs.verify(signed)

    @pytest.mark.asyncio
    async def test_key_order_does_not_matter(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        reordered = dict(reversed(list(signed.items())))
        assert await proofs.verify(reordered)

    @pytest.mark.asyncio
    async def test_tampered_field_fails(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        tampered = copy.deepcopy(signed)
        tampered["credentialSubject"]["achievement"]["name"] = "Cafe Badge"
        check = await proofs.check(tampered)
        assert not check.valid
        assert check.error == "signature does not match document"

    @pytest.mark.asyncio
    async def test_tampered_proof_options_fail(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        signed["proof"]["created"] = "2000-01-01T00:00:00Z"
        assert not await proofs.verify(signed)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "extra",
        [
            {"domain": "evil.example"},
            {"expires": "2000-01-01T00:00:00Z"},
            {"challenge": "1f44d55f", "nonce": "abc"},
        ],
    )
    async def test_added_proof_members_fail(
        self,
        proofs: ProofEngine,
        service: CredentialService,
        issuer: IssuerRecord,
        extra: dict[str, str],
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        signed["proof"].update(extra)
        check = await proofs.check(signed)
        assert not check.valid
        assert check.error == "signature does not match document"

    @pytest.mark.asyncio
    async def test_signed_proof_members_are_covered(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        document = _document(service, issuer)
        key = await service.keys.ensure_key(issuer.id)
        proof_config = {
            "@context": document["@context"],
            "type": PROOF_TYPE,
            "cryptosuite": CRYPTOSUITE,
            "created": "2024-01-01T00:00:00Z",
            "verificationMethod": key.verification_method,
            "proofPurpose": PROOF_PURPOSE,
            "domain": "badges.example.org",
        }
        signature = key.sign(hash_data(proof_config, document))
        signed = {**document, "proof": {**proof_config, "proofValue": encode_base58btc(signature)}}
        assert await proofs.verify(signed)

        signed["proof"]["domain"] = "evil.example"
        assert not await proofs.verify(signed)

    @pytest.mark.asyncio
    async def test_missing_proof(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        check = await proofs.check(_document(service, issuer))
        assert not check.valid
        assert check.error == "proof is missing"

    @pytest.mark.asyncio
    async def test_reissued_under_other_issuer_fails(
        self,
        proofs: ProofEngine,
        service: CredentialService,
        issuer: IssuerRecord,
        other_issuer: IssuerRecord,
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        signed["issuer"]["id"] = service.urls.issuer_iri(other_issuer)
        check = await proofs.check(signed)
        assert not check.valid
        assert "not controlled by the document issuer" in (check.error or "")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("field", "value", "message"),
        [
            ("type", "Ed25519Signature2020", "unsupported proof type"),
            ("cryptosuite", "ecdsa-rdfc-2019", "unsupported cryptosuite"),
            ("proofPurpose", "authentication", "unexpected proof purpose"),
            ("proofValue", "z0OIl", "invalid base58btc"),
            ("verificationMethod", "did:key:z6MkNope#z6MkNope", "unknown verification method"),
        ],
    )
    async def test_malformed_proofs_fail_without_raising(
        self,
        proofs: ProofEngine,
        service: CredentialService,
        issuer: IssuerRecord,
        field: str,
        value: str,
        message: str,
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        signed["proof"][field] = value
        check = await proofs.check(signed)
        assert not check.valid
        assert message in (check.error or "")

    @pytest.mark.asyncio
    async def test_proof_must_be_an_object(
        self, proofs: ProofEngine, service: CredentialService, issuer: IssuerRecord
    ) -> None:
        signed = await proofs.sign(_document(service, issuer), issuer.id)
        signed["proof"] = [signed["proof"]]
        assert not await proofs.verify(signed)


def test_hash_data_is_two_sha256_digests() -> None:
    assert len(hash_data({"type": PROOF_TYPE}, {"id": "x"})) == 64
