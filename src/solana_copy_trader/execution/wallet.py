"""Signing capabilities handed to the swap executor."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Union

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..datalake.schemas import User
from ..errors import SigningError


@dataclass(slots=True)
class Wallet:
    """Wrapper around a decrypted Solana keypair."""

    keypair: Keypair

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())


class SigningProvider(Protocol):
    """Resolves the signing capability for a user; supplied by wallet custody."""

    def signer_for(self, user: User) -> Wallet:
        ...


def wallet_from_secret(secret: Union[str, bytes, list]) -> Wallet:
    """Build a :class:`Wallet` from base58 text, a JSON byte array or raw bytes."""

    try:
        if isinstance(secret, str):
            text = secret.strip()
            raw = bytes(json.loads(text)) if text.startswith("[") else base58.b58decode(text)
        else:
            raw = bytes(secret)
        keypair = Keypair.from_bytes(raw)
    except Exception as exc:  # noqa: BLE001 - solders and base58 raise assorted types
        raise SigningError(f"invalid signing material: {exc}") from exc
    return Wallet(keypair=keypair)


class StoredKeySigningProvider:
    """Decrypts the key reference stored on the user record.

    ``decrypt`` is the custody hook; it must return the base58 secret or
    raise. Any failure is reported as :class:`SigningError`.
    """

    def __init__(self, decrypt: Optional[Callable[[str], str]] = None) -> None:
        self._decrypt = decrypt or (lambda value: value)

    def signer_for(self, user: User) -> Wallet:
        if not user.encrypted_private_key:
            raise SigningError(f"user {user.id} has no signing key on file")
        try:
            secret = self._decrypt(user.encrypted_private_key)
        except SigningError:
            raise
        except Exception as exc:  # noqa: BLE001 - custody backends raise arbitrary errors
            raise SigningError(f"failed to decrypt signing key for user {user.id}") from exc
        wallet = wallet_from_secret(secret)
        if user.wallet_address and wallet.address != user.wallet_address:
            raise SigningError(f"signing key for user {user.id} does not match linked wallet")
        return wallet


__all__ = ["SigningProvider", "StoredKeySigningProvider", "Wallet", "wallet_from_secret"]
