"""
Nostr crypto for the NWC gateway: keys, event signing, NIP-04 encryption.

coincurve (libsecp256k1) does ECDH and BIP-340 Schnorr signatures,
PyCryptodome does AES-256-CBC.
"""

from __future__ import annotations

import hashlib
import json
import os
from base64 import b64decode, b64encode
from typing import Any, Dict

from coincurve import PrivateKey, PublicKey
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad


def xonly_public_key(private_key_hex: str) -> str:
    """32-byte hex x-only public key (the Nostr pubkey) for a private key."""
    sk = PrivateKey(bytes.fromhex(private_key_hex))
    return sk.public_key.format(compressed=True)[1:].hex()


def event_id(event: Dict[str, Any]) -> bytes:
    """NIP-01 event hash: sha256 of the canonical [0, pubkey, ...] array."""
    serialized = json.dumps(
        [0, event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).digest()


def sign_event(event: Dict[str, Any], private_key_hex: str) -> Dict[str, Any]:
    """Fill in ``id`` and ``sig`` on a Nostr event (mutates and returns it)."""
    digest = event_id(event)
    event["id"] = digest.hex()
    event["sig"] = PrivateKey(bytes.fromhex(private_key_hex)).sign_schnorr(digest).hex()
    return event


class Nip04Cipher:
    """
    NIP-04 channel between our key and one peer.

    The ECDH shared secret is computed once. Ciphertexts use the
    "<base64 ciphertext>?iv=<base64 iv>" format.
    """

    def __init__(self, private_key_hex: str, peer_pubkey_hex: str):
        sk = PrivateKey(bytes.fromhex(private_key_hex))
        # x-only pubkeys are taken to have an even y (02 prefix)
        peer = PublicKey(b"\x02" + bytes.fromhex(peer_pubkey_hex))
        self._key = peer.multiply(sk.secret).format(compressed=True)[1:]

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(16)
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        ciphertext = cipher.encrypt(pad(plaintext.encode("utf-8"), AES.block_size))
        return f"{b64encode(ciphertext).decode('ascii')}?iv={b64encode(iv).decode('ascii')}"

    def decrypt(self, encrypted: str) -> str:
        ct_b64, sep, iv_b64 = encrypted.partition("?iv=")
        if not sep:
            raise ValueError("Invalid NIP-04 ciphertext format (expected '...?iv=...')")
        cipher = AES.new(self._key, AES.MODE_CBC, b64decode(iv_b64))
        return unpad(cipher.decrypt(b64decode(ct_b64)), AES.block_size).decode("utf-8")
