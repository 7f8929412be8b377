"""
Key material decoder for the exchange signing key.

Coinbase hands out P-256 keys in several shapes depending on where they were
exported from. Each accepted shape is an explicit variant:

    pem          -----BEGIN ... PRIVATE KEY----- (literal ``\\n`` escapes allowed)
    pkcs8_der    base64 DER PrivateKeyInfo
    sec1_der     base64 DER ECPrivateKey
    scanned_der  base64 DER the parsers reject but that still carries the
                 ``04 20`` scalar octet string (and maybe a ``03 42 00 04`` point)
    raw32        base64 of the bare 32 byte scalar
    raw64        base64 of scalar || x (the 64 byte scalar+public export; x is
                 checked against the derived point)

Errors never include the input or any slice of it.
"""
import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from evotrader.errors import KeyMaterialError

SCALAR_LEN = 32
POINT_LEN = 64

_SCALAR_TAG = bytes([0x04, 0x20])
_POINT_TAGS = (bytes([0x03, 0x42, 0x00, 0x04]), bytes([0x03, 0x41, 0x04]))


class KeyVariant(str, Enum):
    PEM = "pem"
    PKCS8_DER = "pkcs8_der"
    SEC1_DER = "sec1_der"
    SCANNED_DER = "scanned_der"
    RAW32 = "raw32"
    RAW64 = "raw64"


@dataclass(frozen=True)
class KeyMaterial:
    private_key: ec.EllipticCurvePrivateKey
    variant: KeyVariant

    def public_point(self) -> Tuple[bytes, bytes]:
        numbers = self.private_key.public_key().public_numbers()
        return numbers.x.to_bytes(SCALAR_LEN, "big"), numbers.y.to_bytes(SCALAR_LEN, "big")

    def __repr__(self) -> str:
        return f"KeyMaterial(variant={self.variant.value})"


def _require_p256(key) -> ec.EllipticCurvePrivateKey:
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
        raise KeyMaterialError("private key is not a P-256 EC key")
    return key


def _from_scalar(scalar: bytes, point: Optional[bytes] = None, x_only: bool = False) -> ec.EllipticCurvePrivateKey:
    try:
        key = ec.derive_private_key(int.from_bytes(scalar, "big"), ec.SECP256R1())
    except ValueError:
        raise KeyMaterialError("private scalar is out of range for P-256") from None
    if point is not None:
        numbers = key.public_key().public_numbers()
        derived = numbers.x.to_bytes(SCALAR_LEN, "big")
        if not x_only:
            derived += numbers.y.to_bytes(SCALAR_LEN, "big")
        if derived != point:
            raise KeyMaterialError("embedded public point does not match the private scalar")
    return key


def _find(data: bytes, tag: bytes, start: int = 0) -> int:
    return data.find(tag, start)


def _der_variant(der: bytes) -> KeyVariant:
    """PKCS8 carries ``INTEGER 0`` then an AlgorithmIdentifier SEQUENCE, SEC1 ``INTEGER 1`` then an OCTET STRING."""
    if len(der) < 2 or der[0] != 0x30:
        return KeyVariant.SCANNED_DER
    offset = 2 if der[1] < 0x80 else 2 + (der[1] & 0x7F)
    version = der[offset:offset + 4]
    if version[:3] == b"\x02\x01\x00" and version[3:] == b"\x30":
        return KeyVariant.PKCS8_DER
    if version[:3] == b"\x02\x01\x01" and version[3:] == b"\x04":
        return KeyVariant.SEC1_DER
    return KeyVariant.SCANNED_DER


def _scan(der: bytes) -> ec.EllipticCurvePrivateKey:
    idx = _find(der, _SCALAR_TAG)
    if idx == -1 or idx + 2 + SCALAR_LEN > len(der):
        raise KeyMaterialError(f"no private scalar found in {len(der)} byte key")
    scalar = der[idx + 2:idx + 2 + SCALAR_LEN]

    point = None
    for tag in _POINT_TAGS:
        p = _find(der, tag, idx + 2 + SCALAR_LEN)
        if p != -1 and p + len(tag) + POINT_LEN <= len(der):
            point = der[p + len(tag):p + len(tag) + POINT_LEN]
            break
    return _from_scalar(scalar, point)


def decode_der(der: bytes) -> KeyMaterial:
    if len(der) == SCALAR_LEN:
        return KeyMaterial(_from_scalar(der), KeyVariant.RAW32)
    if len(der) == 2 * SCALAR_LEN:
        return KeyMaterial(_from_scalar(der[:SCALAR_LEN], der[SCALAR_LEN:], x_only=True), KeyVariant.RAW64)

    variant = _der_variant(der)
    if variant != KeyVariant.SCANNED_DER:
        try:
            key = serialization.load_der_private_key(der, password=None)
            return KeyMaterial(_require_p256(key), variant)
        except (ValueError, TypeError, UnsupportedAlgorithm):
            pass  # malformed outer structure; fall through to the scan
    return KeyMaterial(_scan(der), KeyVariant.SCANNED_DER)


def decode_private_key(text: str) -> KeyMaterial:
    """Decode an externally supplied P-256 private key in any accepted variant."""
    if not text or not text.strip():
        raise KeyMaterialError("private key is empty")
    key = text.replace("\\n", "\n").strip()

    if "-----BEGIN" in key:
        try:
            loaded = serialization.load_pem_private_key(key.encode(), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm):
            raise KeyMaterialError("PEM private key could not be parsed") from None
        return KeyMaterial(_require_p256(loaded), KeyVariant.PEM)

    compact = "".join(key.split())
    try:
        der = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        raise KeyMaterialError("private key is neither PEM nor base64") from None
    if not der:
        raise KeyMaterialError("private key decoded to zero bytes")
    return decode_der(der)
