"""Tests for credential format classification."""

from __future__ import annotations

from badge_engine.modules.credentials.formats import (
    OB2_CONTEXT,
    OB3_CONTEXT,
    VC_V1_CONTEXT,
    VC_V2_CONTEXT,
    CredentialFormat,
    LegacyCredential,
    VerifiableCredential,
    classify,
    declared_contexts,
    document_issuer,
    wrap,
)


def test_classify_ob2() -> None:
    assert classify({"@context": OB2_CONTEXT}) is CredentialFormat.OB2


def test_classify_ob3_with_either_vc_context() -> None:
    assert classify({"@context": [VC_V2_CONTEXT, OB3_CONTEXT]}) is CredentialFormat.OB3
    older_ob3 = "https://purl.imsglobal.org/spec/ob/v3p0/context-3.0.2.json"
    assert classify({"@context": [VC_V1_CONTEXT, older_ob3]}) is CredentialFormat.OB3


def test_classify_unknown() -> None:
    assert classify({"foo": "bar"}) is None
    assert classify({"@context": [VC_V2_CONTEXT]}) is None
    assert classify({"@context": [OB3_CONTEXT]}) is None


def test_declared_contexts_skips_inline_objects() -> None:
    document = {"@context": [VC_V2_CONTEXT, {"@vocab": "https://example.org/#"}]}
    assert declared_contexts(document) == [VC_V2_CONTEXT]
    assert declared_contexts({"@context": 42}) == []


def test_wrap_returns_tagged_member() -> None:
    legacy = wrap({"@context": OB2_CONTEXT})
    assert isinstance(legacy, LegacyCredential)
    assert legacy.format is CredentialFormat.OB2

    modern = wrap({"@context": [VC_V2_CONTEXT, OB3_CONTEXT], "proof": {"type": "x"}})
    assert isinstance(modern, VerifiableCredential)
    assert modern.format is CredentialFormat.OB3
    assert modern.signed

    assert wrap({}) is None


def test_document_issuer_forms() -> None:
    assert document_issuer({"issuer": "https://issuer.example"}) == "https://issuer.example"
    assert document_issuer({"issuer": {"id": "did:web:issuer.example"}}) == (
        "did:web:issuer.example"
    )
    assert document_issuer({"issuer": {"name": "no id"}}) is None
    assert document_issuer({}) is None
