"""Address format checks for the supported chains.

Only the encoding is verified (alphabet, length, prefix and checksum); whether
the key behind an address is ours is the signer's business.
"""
import hashlib
import re

from oae.core.errors import InvalidAddress

B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

# chain -> (base58 version bytes, bech32 hrp)
BASE58_VERSIONS = {
    "BTC": {0x00, 0x05},
    "LTC": {0x30, 0x32, 0x05},
}
BECH32_HRP = {
    "BTC": "bc",
    "LTC": "ltc",
}
EVM_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
EVM_CHAINS = {"POLYGON", "ETH"}


def b58decode_check(value: str) -> bytes:
    n = 0
    for ch in value:
        idx = B58_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError("bad base58 character")
        n = n * 58 + idx
    raw = n.to_bytes((n.bit_length() + 7) // 8, "big")
    pad = len(value) - len(value.lstrip("1"))
    raw = b"\x00" * pad + raw
    if len(raw) < 5:
        raise ValueError("too short")
    payload, checksum = raw[:-4], raw[-4:]
    if hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] != checksum:
        raise ValueError("bad checksum")
    return payload


def _bech32_polymod(values) -> int:
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((top >> i) & 1) else 0
    return chk


def bech32_decode(value: str) -> tuple[str, list[int]]:
    if value.lower() != value and value.upper() != value:
        raise ValueError("mixed case")
    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value) or len(value) > 90:
        raise ValueError("bad separator position")
    hrp, data_part = value[:pos], value[pos + 1:]
    data = []
    for ch in data_part:
        idx = BECH32_CHARSET.find(ch)
        if idx < 0:
            raise ValueError("bad bech32 character")
        data.append(idx)
    expanded = [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]
    if _bech32_polymod(expanded + data) not in (BECH32_CONST, BECH32M_CONST):
        raise ValueError("bad checksum")
    return hrp, data[:-6]


def validate_address(chain: str, address: str) -> str:
    """Return the canonical form of ``address`` on ``chain`` or raise InvalidAddress."""
    chain = chain.upper()
    address = (address or "").strip()
    if not address:
        raise InvalidAddress("empty address")

    if chain in EVM_CHAINS:
        if not EVM_RE.match(address):
            raise InvalidAddress(f"not a {chain} address: {address}")
        return address.lower()

    if chain not in BASE58_VERSIONS:
        raise InvalidAddress(f"unsupported chain: {chain}")

    hrp = BECH32_HRP[chain]
    if address.lower().startswith(hrp + "1"):
        try:
            got_hrp, data = bech32_decode(address)
        except ValueError as e:
            raise InvalidAddress(f"not a {chain} address: {e}") from e
        # witness version + 20..40 byte program, in 5-bit groups
        if got_hrp != hrp or not data or data[0] > 16 or not 33 <= len(data) <= 65:
            raise InvalidAddress(f"not a {chain} address: bad witness program")
        return address.lower()

    if not 26 <= len(address) <= 35:
        raise InvalidAddress(f"not a {chain} address: bad length")
    try:
        payload = b58decode_check(address)
    except ValueError as e:
        raise InvalidAddress(f"not a {chain} address: {e}") from e
    if len(payload) != 21 or payload[0] not in BASE58_VERSIONS[chain]:
        raise InvalidAddress(f"not a {chain} address: bad version byte")
    return address
