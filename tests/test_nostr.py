import base64
import json

import pytest

from nostr_feedz import nostr

from conftest import NPUB, NSEC, PRIVKEY_HEX, PUBKEY_HEX, SECOND_PRIVKEY_HEX


def test_decode_reference_npub_and_nsec():
    assert nostr.decode_npub(NPUB) == PUBKEY_HEX
    assert nostr.decode_nsec(NSEC) == PRIVKEY_HEX


def test_encode_round_trips_reference_keys():
    assert nostr.encode_npub(PUBKEY_HEX) == NPUB
    assert nostr.encode_nsec(PRIVKEY_HEX) == NSEC
    assert nostr.decode_npub(nostr.encode_npub(SECOND_PRIVKEY_HEX)) == SECOND_PRIVKEY_HEX


@pytest.mark.parametrize(
    "value",
    [
        "",
        "npub1",
        "not-a-key",
        NSEC,
        NPUB[:-1] + ("q" if NPUB[-1] != "q" else "p"),
        PUBKEY_HEX,
        None,
    ],
)
def test_decode_npub_rejects_malformed_input(value):
    assert nostr.decode_npub(value) is None
    assert nostr.is_valid_npub(value) is False


def test_decode_nsec_rejects_npub():
    assert nostr.decode_nsec(NPUB) is None
    assert nostr.is_valid_nsec(NSEC)


def test_encode_rejects_bad_hex():
    with pytest.raises(ValueError):
        nostr.encode_npub("abc")


def test_normalize_public_key_accepts_npub_and_hex():
    assert nostr.normalize_public_key(NPUB) == PUBKEY_HEX
    assert nostr.normalize_public_key(PUBKEY_HEX.upper()) == PUBKEY_HEX
    assert nostr.normalize_public_key("  " + NPUB + " ") == PUBKEY_HEX
    assert nostr.normalize_public_key("garbage") is None


def test_public_key_from_private_matches_bip340_vector():
    assert (
        nostr.public_key_from_private(SECOND_PRIVKEY_HEX)
        == "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
    )


def test_serialize_event_is_compact_and_ordered():
    event = {
        "pubkey": "ab",
        "created_at": 1,
        "kind": 1,
        "tags": [["t", "x"]],
        "content": "héllo \"q\"",
    }

    serialized = nostr.serialize_event(event)

    assert serialized == '[0,"ab",1,1,[["t","x"]],"héllo \\"q\\""]'.encode("utf-8")


def test_sign_and_verify_event():
    pubkey = nostr.public_key_from_private(PRIVKEY_HEX)
    event = {
        "pubkey": pubkey,
        "created_at": 1_700_000_000,
        "kind": 1,
        "tags": [],
        "content": "hello",
    }

    signed = nostr.sign_event(event, PRIVKEY_HEX)

    assert signed["id"] == nostr.event_id(event)
    assert len(signed["sig"]) == 128
    assert nostr.verify_event(signed)

    tampered = dict(signed, content="bye")
    assert not nostr.verify_event(tampered)
    assert not nostr.verify_event({"id": "x"})


def test_build_auth_event_with_local_key():
    pubkey = nostr.public_key_from_private(PRIVKEY_HEX)

    event = nostr.build_auth_event(
        "https://example.com/api", "post", pubkey, PRIVKEY_HEX, now=1_700_000_000
    )

    assert event["kind"] == 27235
    assert event["tags"] == [["u", "https://example.com/api"], ["method", "POST"]]
    assert event["content"] == ""
    assert event["created_at"] == 1_700_000_000
    assert nostr.verify_event(event)


def test_auth_header_is_base64_json_with_scheme():
    pubkey = nostr.public_key_from_private(PRIVKEY_HEX)

    header = nostr.generate_auth_header("https://example.com/x", "GET", pubkey, PRIVKEY_HEX)

    scheme, payload = header.split(" ", 1)
    assert scheme == "Nostr"
    decoded = json.loads(base64.b64decode(payload))
    assert decoded["pubkey"] == pubkey
    assert nostr.verify_auth_header(header, "https://example.com/x", "GET") == pubkey


def test_verify_auth_header_rejects_mismatches():
    pubkey = nostr.public_key_from_private(PRIVKEY_HEX)
    event = nostr.build_auth_event(
        "https://example.com/x", "GET", pubkey, PRIVKEY_HEX, now=1_000
    )
    header = nostr.encode_auth_header(event)

    assert nostr.verify_auth_header(header, "https://example.com/x", "GET", now=1_030) == pubkey
    assert nostr.verify_auth_header(header, "https://example.com/x", "GET", now=2_000) is None
    assert nostr.verify_auth_header(header, "https://example.com/y", "GET", now=1_000) is None
    assert nostr.verify_auth_header(header, "https://example.com/x", "POST", now=1_000) is None
    assert nostr.verify_auth_header("Bearer abc", "https://example.com/x", "GET") is None
    assert nostr.verify_auth_header("Nostr !!!", "https://example.com/x", "GET") is None


class RecordingSigner:
    def __init__(self, private_key_hex):
        self.private_key_hex = private_key_hex
        self.signed = []

    def get_public_key(self):
        return nostr.public_key_from_private(self.private_key_hex)

    def sign_event(self, event):
        self.signed.append(event)
        return nostr.sign_event(event, self.private_key_hex)


def test_build_auth_event_without_any_signer_raises():
    with pytest.raises(nostr.NoSigningMethodError):
        nostr.build_auth_event("https://example.com", "GET", PUBKEY_HEX)


def test_build_auth_event_uses_registered_delegated_signer():
    signer = RecordingSigner(SECOND_PRIVKEY_HEX)
    nostr.register_delegated_signer(signer)

    event = nostr.build_auth_event("https://example.com", "get", signer.get_public_key())

    assert len(signer.signed) == 1
    assert nostr.verify_event(event)

    nostr.clear_delegated_signer()
    with pytest.raises(nostr.NoSigningMethodError):
        nostr.build_auth_event("https://example.com", "GET", signer.get_public_key())


def test_local_key_takes_precedence_over_delegated_signer():
    signer = RecordingSigner(SECOND_PRIVKEY_HEX)
    nostr.register_delegated_signer(signer)

    resolved = nostr.resolve_signer(PRIVKEY_HEX)

    assert resolved.kind is nostr.SignerKind.LOCAL
    assert resolved.get_public_key() == nostr.public_key_from_private(PRIVKEY_HEX)
    assert nostr.Signer.delegated(signer).get_public_key() == signer.get_public_key()
