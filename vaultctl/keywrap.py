from __future__ import annotations

"""
RSA key pairs and key wrapping for vault containers.

Key pairs are PEM files: PKCS#8 private keys (unencrypted, mode 0600) and
SubjectPublicKeyInfo public keys (mode 0644).  The private PEM doubles as the
LUKS keyfile enrolled in a container's keyslot table.

Sealed container format
-----------------------
``seal_stream``/``unseal_stream`` implement container-level encryption on top
of the block-device encryption:

- ``[u16 header_len][header_json]`` where the header lists one RSA-OAEP
  wrapped data key per recipient label (``container``, ``master``)
- followed by ``[u32 ct_len][ct]`` chunks, AES-256-GCM with
  nonce = 8-byte random prefix || 4-byte BE chunk counter
- each chunk authenticates ``header_json || u32 index || u8 final`` so
  reordering and truncation are detected
"""

import base64
import hashlib
import json
import os
import struct
from typing import BinaryIO, Final, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .model import KeyPairPaths

MAGIC: Final[str] = "VLTS"
VERSION: Final[int] = 1
DEFAULT_CHUNK_SIZE: Final[int] = 1024 * 1024
DATA_KEY_LEN: Final[int] = 32

_U16_MAX: Final[int] = 0xFFFF
_U32_MAX: Final[int] = 0xFFFFFFFF


class RecipientMismatch(ValueError):
    """The private key does not unwrap any recipient of a sealed stream."""


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"))


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(path, mode)


def generate_key_pair(private_path: str, public_path: str, bits: int = 2048) -> KeyPairPaths:
    """Generate an RSA key pair and write both halves to disk."""

    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    priv_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    _write_file(private_path, priv_pem, 0o600)
    _write_file(public_path, pub_pem, 0o644)
    return KeyPairPaths(private=private_path, public=public_path)


def load_public_key(path: str) -> rsa.RSAPublicKey:
    with open(path, "rb") as fh:
        return serialization.load_pem_public_key(fh.read())


def load_private_key(path: str) -> rsa.RSAPrivateKey:
    with open(path, "rb") as fh:
        return serialization.load_pem_private_key(fh.read(), password=None)


def fingerprint(public_path: str) -> str:
    """SHA-256 over the DER public key; safe to log."""

    der = load_public_key(public_path).public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


def wrap(data: bytes, public_path: str) -> bytes:
    return load_public_key(public_path).encrypt(data, _oaep())


def unwrap(ciphertext: bytes, private_path: str) -> bytes:
    return load_private_key(private_path).decrypt(ciphertext, _oaep())


def _write_header(out_f: BinaryIO, header: dict) -> bytes:
    hbytes = json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8")
    if len(hbytes) > _U16_MAX:
        raise ValueError("Header too large")
    out_f.write(struct.pack(">H", len(hbytes)))
    out_f.write(hbytes)
    return hbytes


def _read_header(in_f: BinaryIO) -> tuple[dict, bytes]:
    lb = in_f.read(2)
    if len(lb) != 2:
        raise ValueError("Missing sealed header")
    (hlen,) = struct.unpack(">H", lb)
    hbytes = in_f.read(hlen)
    if len(hbytes) != hlen:
        raise ValueError("Truncated sealed header")
    header = json.loads(hbytes.decode("utf-8"))
    if not isinstance(header, dict) or header.get("magic") != MAGIC or header.get("v") != VERSION:
        raise ValueError("Not a sealed vault container")
    recipients = header.get("recipients")
    if not isinstance(header.get("nonce_prefix"), str) or not isinstance(recipients, dict):
        raise ValueError("Malformed sealed header")
    if not all(isinstance(blob, str) for blob in recipients.values()):
        raise ValueError("Malformed sealed recipient")
    return header, hbytes


def _nonce(prefix8: bytes, idx: int) -> bytes:
    if idx < 0 or idx > _U32_MAX:
        raise ValueError("Chunk index exceeds 32-bit counter space")
    return prefix8 + idx.to_bytes(4, "big")


def _chunk_aad(header: bytes, idx: int, final: bool) -> bytes:
    return header + struct.pack(">IB", idx, 1 if final else 0)


def seal_stream(
    in_f: BinaryIO,
    out_f: BinaryIO,
    recipients: Mapping[str, str],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """Encrypt ``in_f`` for every public key in ``recipients`` (label -> path)."""

    if not recipients:
        raise ValueError("at least one recipient is required")
    data_key = AESGCM.generate_key(bit_length=DATA_KEY_LEN * 8)
    prefix = os.urandom(8)
    header = {
        "magic": MAGIC,
        "v": VERSION,
        "suite": "aes256gcm",
        "nonce_prefix": _b64e(prefix),
        "chunk_size": int(chunk_size),
        "recipients": {label: _b64e(wrap(data_key, path)) for label, path in recipients.items()},
    }
    aad = _write_header(out_f, header)
    aead = AESGCM(data_key)
    idx = 0
    current = in_f.read(chunk_size)
    while True:
        following = in_f.read(chunk_size) if current else b""
        final = not following
        ct = aead.encrypt(_nonce(prefix, idx), current, _chunk_aad(aad, idx, final))
        out_f.write(struct.pack(">I", len(ct)))
        out_f.write(ct)
        if final:
            return
        current = following
        idx += 1


def _recover_data_key(header: dict, private_path: str) -> bytes:
    for blob in header["recipients"].values():
        try:
            return unwrap(_b64d(blob), private_path)
        except ValueError:
            continue
    raise RecipientMismatch("private key does not match any sealed recipient")


def unseal_stream(in_f: BinaryIO, out_f: BinaryIO, private_path: str) -> None:
    """Decrypt a sealed stream with any recipient's private key."""

    header, aad = _read_header(in_f)
    data_key = _recover_data_key(header, private_path)
    prefix = _b64d(header["nonce_prefix"])
    if len(prefix) != 8:
        raise ValueError("Malformed sealed nonce prefix")
    aead = AESGCM(data_key)
    idx = 0
    pending = in_f.read(4)
    while True:
        if len(pending) != 4:
            raise ValueError("Truncated sealed stream")
        (clen,) = struct.unpack(">I", pending)
        ct = in_f.read(clen)
        if len(ct) != clen:
            raise ValueError("Truncated sealed chunk")
        pending = in_f.read(4)
        final = not pending
        try:
            pt = aead.decrypt(_nonce(prefix, idx), ct, _chunk_aad(aad, idx, final))
        except InvalidTag as exc:
            raise ValueError(f"sealed chunk {idx} failed authentication") from exc
        out_f.write(pt)
        if final:
            return
        idx += 1
