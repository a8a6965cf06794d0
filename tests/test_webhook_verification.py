from app.services.webhooks.verification import compute_signature, verify_signature

SECRET = "shh"
BODY = b'{"id":"evt-1","event":"document.completed"}'


def test_accepts_bare_and_prefixed_digest():
    digest = compute_signature(BODY, SECRET)
    assert verify_signature(BODY, digest, SECRET)
    assert verify_signature(BODY, f"sha256={digest}", SECRET)
    assert verify_signature(BODY, f"SHA256={digest.upper()}", SECRET)


def test_rejects_tampered_body_or_wrong_secret():
    digest = compute_signature(BODY, SECRET)
    assert not verify_signature(BODY + b" ", digest, SECRET)
    assert not verify_signature(BODY, digest, "other")


def test_rejects_missing_signature_or_secret():
    digest = compute_signature(BODY, SECRET)
    assert not verify_signature(BODY, None, SECRET)
    assert not verify_signature(BODY, "", SECRET)
    assert not verify_signature(BODY, digest, "")


def test_non_ascii_signature_is_a_mismatch():
    assert not verify_signature(BODY, "sha256=éé", SECRET)
    assert not verify_signature(BODY, "\udce9", SECRET)
