"""
Key resolution.

A `KeyHandle` carries private key material from the vault to the signer and nowhere else:
- its repr/str never show the material
- it refuses to be pickled or copied
- the material can be taken out exactly once (`consume()`), after which the handle is spent
"""

from __future__ import annotations

import threading
from typing import Any, Optional

from common.errors import AppError, KeyNotFound, classify_exception
from observability import log_event


class KeyHandle:
    __slots__ = ("key_path", "chain", "_material", "_lock")

    def __init__(self, *, key_path: str, chain: str, material: str) -> None:
        self.key_path = key_path
        self.chain = chain
        self._material: Optional[str] = material
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "spent" if self.consumed else "live"
        return f"KeyHandle(key_path={self.key_path!r}, chain={self.chain!r}, material=<redacted>, {state})"

    __str__ = __repr__

    def __reduce__(self) -> Any:
        raise TypeError("KeyHandle cannot be pickled")

    def __copy__(self) -> Any:
        raise TypeError("KeyHandle cannot be copied")

    def __deepcopy__(self, memo: Any) -> Any:
        raise TypeError("KeyHandle cannot be copied")

    @property
    def consumed(self) -> bool:
        return self._material is None

    def consume(self) -> str:
        with self._lock:
            if self._material is None:
                raise AppError("key_handle_consumed", "Key handle was already used", {"key_path": self.key_path})
            material, self._material = self._material, None
        return material


class KeyResolver:
    """
    Resolve the signing key for (identity, chain) from the identity's vault.

    `vault` is anything with `get_secret(vault_id, path) -> str`; transient vault errors are
    retried inside the client, so anything reaching here is final.
    """

    def __init__(self, vault: Any) -> None:
        self.vault = vault

    def resolve(self, identity: Any, chain: str) -> KeyHandle:
        key_path = identity.key_path(chain)
        if not identity.active:
            raise KeyNotFound(
                f"Signing identity {identity.identity_id} is deregistered",
                {"identity_id": identity.identity_id, "chain": chain},
            )
        try:
            material = self.vault.get_secret(identity.vault_id, key_path)
        except KeyNotFound:
            raise
        except AppError as e:
            if e.code == "not_found":
                raise KeyNotFound(
                    f"No key at {key_path} for identity {identity.identity_id}",
                    {"identity_id": identity.identity_id, "key_path": key_path, "chain": chain},
                )
            raise
        except Exception as e:
            ae = classify_exception(e)
            raise AppError(ae.code, f"Key lookup failed: {ae.message}", {"key_path": key_path}) from e

        material = (material or "").strip()
        if not material:
            raise KeyNotFound(
                f"Empty key material at {key_path}",
                {"identity_id": identity.identity_id, "key_path": key_path, "chain": chain},
            )
        log_event("key_resolved", data={"identity_id": identity.identity_id, "chain": chain, "key_path": key_path})
        return KeyHandle(key_path=key_path, chain=chain, material=material)
