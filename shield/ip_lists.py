"""Operator actions on the IP lists: whitelist, blacklist, temporary blocks.

Every change is mirrored by a `block` or `unblock` event so the event log
holds the full history of who was let in or shut out, and when.
"""

import getpass
import ipaddress
import logging
from dataclasses import dataclass

from shield.events import EventType, IPListEntry, ListType
from shield.stores import EventLog, ReputationStore

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_MINUTES = 15


def validate_ip(ip: str) -> str:
    """Canonical text form of an IPv4/IPv6 address. Raises ValueError."""
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise ValueError(f"Invalid IP address: {ip}")


def _operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "system"


@dataclass(frozen=True)
class IPStatus:
    ip: str
    status: str  # WHITELISTED | BLOCKED | NORMAL
    entry: IPListEntry | None = None


class IPListManager:

    def __init__(self, events: EventLog, reputation: ReputationStore,
                 operator: str | None = None):
        self.events = events
        self.reputation = reputation
        self.operator = operator or _operator()

    # Whitelist ---------------------------------------------------------

    def whitelist_add(self, ip: str, reason: str = "Added to whitelist") -> IPListEntry:
        ip = validate_ip(ip)
        entry = self.reputation.upsert(ip, ListType.WHITELIST, reason,
                                       created_by=self.operator)
        self.events.record(EventType.UNBLOCK, ip,
                           metadata={"action": "whitelist_add", "reason": reason})
        logger.info("IP %s added to whitelist: %s", ip, reason)
        return entry

    def whitelist_remove(self, ip: str) -> bool:
        ip = validate_ip(ip)
        removed = self.reputation.delete(ip, [ListType.WHITELIST]) > 0
        if removed:
            self.events.record(EventType.BLOCK, ip, metadata={"action": "whitelist_remove"})
            logger.info("IP %s removed from whitelist", ip)
        return removed

    def whitelist_list(self) -> list[IPListEntry]:
        return self.reputation.entries(ListType.WHITELIST)

    # Blacklist ---------------------------------------------------------

    def blacklist_add(self, ip: str, reason: str = "Added to blacklist") -> IPListEntry:
        ip = validate_ip(ip)
        entry = self.reputation.upsert(ip, ListType.BLACKLIST, reason,
                                       created_by=self.operator)
        self.events.record(EventType.BLOCK, ip, metadata={
            "action": "blacklist_add", "reason": reason, "type": ListType.BLACKLIST.value,
        })
        logger.info("IP %s added to blacklist: %s", ip, reason)
        return entry

    def blacklist_remove(self, ip: str) -> bool:
        ip = validate_ip(ip)
        removed = self.reputation.delete(ip, [ListType.BLACKLIST]) > 0
        if removed:
            self.events.record(EventType.UNBLOCK, ip, metadata={"action": "blacklist_remove"})
            logger.info("IP %s removed from blacklist", ip)
        return removed

    def blacklist_list(self) -> list[IPListEntry]:
        return self.reputation.entries(ListType.BLACKLIST)

    # Temporary blocks --------------------------------------------------

    def block(self, ip: str, minutes: int = DEFAULT_BLOCK_MINUTES,
              reason: str = "Temporary block") -> IPListEntry:
        ip = validate_ip(ip)
        if minutes <= 0:
            raise ValueError(f"block duration must be positive (got {minutes})")
        current = self.reputation.active_entry(ip)
        if current is not None and current.list_type == ListType.BLACKLIST:
            raise ValueError(f"IP {ip} is blacklisted; use `shield ip unblock` to lift it")
        expires_at = self.reputation.clock() + minutes * 60
        entry = self.reputation.upsert(ip, ListType.TEMP_BLOCK, reason,
                                       expires_at=expires_at, created_by=self.operator)
        self.events.record(EventType.BLOCK, ip, metadata={
            "action": "temp_block", "reason": reason, "type": ListType.TEMP_BLOCK.value,
            "duration_minutes": minutes, "expires_at": expires_at,
        })
        logger.info("IP %s temporarily blocked for %d minutes: %s", ip, minutes, reason)
        return entry

    def unblock(self, ip: str) -> bool:
        """Remove temp_block and blacklist entries; a whitelist entry is kept."""
        ip = validate_ip(ip)
        removed = self.reputation.delete(ip, [ListType.TEMP_BLOCK, ListType.BLACKLIST]) > 0
        if removed:
            self.events.record(EventType.UNBLOCK, ip, metadata={"reason": "manual_unblock"})
            logger.info("IP %s unblocked", ip)
        else:
            logger.info("IP %s was not blocked", ip)
        return removed

    # Inspection --------------------------------------------------------

    def list_entries(self, list_type: ListType | str | None = None) -> list[IPListEntry]:
        if list_type in (None, "all"):
            return self.reputation.entries()
        return self.reputation.entries(ListType(list_type))

    def status(self, ip: str) -> IPStatus:
        ip = validate_ip(ip)
        entry = self.reputation.active_entry(ip)
        if entry is None:
            return IPStatus(ip, "NORMAL", self.reputation.get_entry(ip))
        if entry.list_type == ListType.WHITELIST:
            return IPStatus(ip, "WHITELISTED", entry)
        return IPStatus(ip, "BLOCKED", entry)

    def cleanup(self) -> int:
        deleted = self.reputation.cleanup_expired()
        logger.info("Cleaned up %d expired temporary block(s)", deleted)
        return deleted
