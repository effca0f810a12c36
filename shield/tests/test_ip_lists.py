"""Tests for IPListManager — validation, list transitions, status, cleanup."""

import pytest

from shield.events import EventType, ListType
from shield.ip_lists import IPListManager, validate_ip
from shield.stores.memory import MemoryEventLog, MemoryReputationStore
from shield.testing import FakeClock


class TestValidateIp:
    @pytest.mark.parametrize("ip", ["10.0.0.1", "2001:db8::1", " 192.168.1.1 "])
    def test_valid(self, ip):
        assert validate_ip(ip) == ip.strip()

    def test_ipv6_is_canonicalized(self):
        assert validate_ip("2001:DB8:0:0::1") == "2001:db8::1"

    @pytest.mark.parametrize("ip", ["", "10.0.0", "256.1.1.1", "not-an-ip", "10.0.0.1/24"])
    def test_invalid(self, ip):
        with pytest.raises(ValueError, match="Invalid IP"):
            validate_ip(ip)


class TestLists:
    def setup_method(self):
        self.clock = FakeClock()
        self.events = MemoryEventLog(self.clock)
        self.reputation = MemoryReputationStore(self.clock)
        self.lists = IPListManager(self.events, self.reputation, operator="ops")

    def test_whitelist_add_and_remove(self):
        entry = self.lists.whitelist_add("10.0.0.1", "monitoring probe")
        assert entry.created_by == "ops"
        assert [e.ip for e in self.lists.whitelist_list()] == ["10.0.0.1"]
        assert self.lists.whitelist_remove("10.0.0.1")
        assert not self.lists.whitelist_remove("10.0.0.1")
        assert self.lists.whitelist_list() == []

    def test_whitelist_replaces_block(self):
        self.lists.block("10.0.0.1", 60)
        self.lists.whitelist_add("10.0.0.1")
        assert self.lists.status("10.0.0.1").status == "WHITELISTED"

    def test_blacklist_add_records_block_event(self):
        self.lists.blacklist_add("10.0.0.1", "scraper")
        [event] = self.events.recent([EventType.BLOCK], 60)
        assert event.metadata["action"] == "blacklist_add"
        assert self.lists.status("10.0.0.1").status == "BLOCKED"

    def test_blacklist_remove_only_removes_blacklist(self):
        self.lists.whitelist_add("10.0.0.1")
        assert not self.lists.blacklist_remove("10.0.0.1")
        assert self.lists.status("10.0.0.1").status == "WHITELISTED"

    def test_block_expires(self):
        entry = self.lists.block("10.0.0.1", 30, "noisy")
        assert entry.expires_at == self.clock() + 30 * 60
        assert self.lists.status("10.0.0.1").status == "BLOCKED"
        self.clock.advance(30 * 60)
        status = self.lists.status("10.0.0.1")
        assert status.status == "NORMAL"
        # the expired entry is still shown for context
        assert status.entry.list_type == ListType.TEMP_BLOCK

    def test_block_rejects_non_positive_duration(self):
        with pytest.raises(ValueError):
            self.lists.block("10.0.0.1", 0)

    def test_block_keeps_existing_blacklist(self):
        self.lists.blacklist_add("10.0.0.1", "scraper")
        with pytest.raises(ValueError, match="blacklisted"):
            self.lists.block("10.0.0.1", 15)
        entry = self.reputation.get_entry("10.0.0.1")
        assert entry.list_type == ListType.BLACKLIST
        assert entry.expires_at is None

    def test_unblock_removes_blacklist_and_temp_block(self):
        self.lists.blacklist_add("10.0.0.1")
        self.lists.block("10.0.0.2", 15)
        assert self.lists.unblock("10.0.0.1")
        assert self.lists.unblock("10.0.0.2")
        assert not self.lists.unblock("10.0.0.3")
        assert self.lists.list_entries() == []
        assert len(self.events.recent([EventType.UNBLOCK], 60)) == 2

    def test_unblock_keeps_whitelist(self):
        self.lists.whitelist_add("10.0.0.1")
        assert not self.lists.unblock("10.0.0.1")
        assert self.lists.status("10.0.0.1").status == "WHITELISTED"

    def test_list_entries_by_type(self):
        self.lists.whitelist_add("10.0.0.1")
        self.lists.blacklist_add("10.0.0.2")
        self.lists.block("10.0.0.3", 15)
        assert len(self.lists.list_entries()) == 3
        assert len(self.lists.list_entries("all")) == 3
        assert [e.ip for e in self.lists.list_entries("temp_block")] == ["10.0.0.3"]
        with pytest.raises(ValueError):
            self.lists.list_entries("graylist")

    def test_cleanup(self):
        self.lists.block("10.0.0.1", 1)
        self.lists.block("10.0.0.2", 60)
        self.clock.advance(120)
        assert self.lists.cleanup() == 1
        assert [e.ip for e in self.lists.list_entries()] == ["10.0.0.2"]

    def test_invalid_ip_rejected_before_store(self):
        with pytest.raises(ValueError):
            self.lists.blacklist_add("999.1.1.1")
        assert self.reputation.entries() == []
