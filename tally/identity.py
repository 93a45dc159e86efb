"""Account identifier canonicalization for Hedera native ids and EVM addresses."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, Optional


_NATIVE_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_EVM_RE = re.compile(r"^(?:0x)?([0-9a-fA-F]{40})$")
# Entity id field widths on Hedera; a 20-byte address that decodes within them
# is a long-zero address rather than a key-derived alias.
MAX_SHARD = (1 << 10) - 1
MAX_REALM = (1 << 16) - 1
MAX_NUM = (1 << 38) - 1
MAX_SYSTEM_ACCOUNT = 1000


def canonical_id(value: object) -> Optional[str]:
    """Return the canonical textual form of an account identifier.

    Native ids are integer-normalized (``0.0.042`` -> ``0.0.42``). Long-zero
    EVM addresses (4-byte shard, 8-byte realm, 8-byte num) map to the native
    id they encode when each field fits Hedera's entity id widths. Any other
    EVM address is lowercased with a ``0x`` prefix. Unrecognized values
    return ``None``.
    """

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    native = _NATIVE_RE.fullmatch(text)
    if native:
        shard, realm, num = (int(part) for part in native.groups())
        return f"{shard}.{realm}.{num}"

    evm = _EVM_RE.fullmatch(text)
    if evm:
        hex_digits = evm.group(1).lower()
        shard, realm, num = int(hex_digits[:8], 16), int(hex_digits[8:24], 16), int(hex_digits[24:], 16)
        if shard <= MAX_SHARD and realm <= MAX_REALM and num <= MAX_NUM:
            return f"{shard}.{realm}.{num}"
        return f"0x{hex_digits}"
    return None


def evm_address_for(native_id: str) -> str:
    """Return the long-zero EVM address encoding a native ``shard.realm.num`` id."""

    match = _NATIVE_RE.fullmatch(native_id.strip())
    if not match:
        raise ValueError(f"Not a native account id: {native_id!r}")
    shard, realm, num = (int(part) for part in match.groups())
    if shard > MAX_SHARD or realm > MAX_REALM or num > MAX_NUM:
        raise ValueError(f"Account id out of range: {native_id!r}")
    return f"0x{shard:08x}{realm:016x}{num:016x}"


def is_system_account(canonical: Optional[str]) -> bool:
    if not canonical:
        return False
    match = _NATIVE_RE.fullmatch(canonical)
    if not match:
        return False
    return int(match.group(3)) <= MAX_SYSTEM_ACCOUNT


def _in_range(native_id: str) -> bool:
    try:
        evm_address_for(native_id)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class ContractIdentity:
    native_id: str
    evm_address: Optional[str] = None

    def __post_init__(self) -> None:
        if canonical_id(self.native_id) is None or not _in_range(self.native_id):
            raise ValueError(f"Invalid contract id: {self.native_id!r}")
        if self.evm_address and canonical_id(self.evm_address) is None:
            raise ValueError(f"Invalid contract EVM address: {self.evm_address!r}")

    @property
    def forms(self) -> FrozenSet[str]:
        forms = {
            canonical_id(self.native_id),
            canonical_id(evm_address_for(self.native_id)),
        }
        if self.evm_address:
            forms.add(canonical_id(self.evm_address))
        return frozenset(form for form in forms if form)

    def is_self(self, value: object) -> bool:
        canonical = canonical_id(value)
        return canonical is not None and canonical in self.forms
