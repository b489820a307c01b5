"""
VIP tagging.

A message is VIP when its sender appears in the account's VIP sender set.
Addresses are compared case-insensitively everywhere, so every caller goes
through normalize_address().
"""
from typing import Iterable, List, Set

from mail_engine.models import Message


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def vip_address_set(addresses: Iterable[str]) -> Set[str]:
    """Build the lookup set used by is_vip() from raw addresses."""
    return {normalize_address(address) for address in addresses if normalize_address(address)}


def is_vip(sender: str, vip_set: Set[str]) -> bool:
    """Whether a sender belongs to a set built by vip_address_set()."""
    return normalize_address(sender) in vip_set


def stamp_vip(messages: Iterable[Message], vip_set: Set[str]) -> List[Message]:
    """Return copies of messages with is_vip derived from the VIP set."""
    return [message.copy(is_vip=is_vip(message.sender, vip_set)) for message in messages]
