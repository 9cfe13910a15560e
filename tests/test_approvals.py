"""
Tests for the in-memory approval registry and arbitration button ids.
"""

from compbot.core.approvals import ApprovalRegistry
from compbot.utils.views import APPROVE_PREFIX, DENY_PREFIX, parse_arbitration_id


def make(registry, user_id=2, guild_id=1, **kwargs):
    return registry.create(user_id=user_id, guild_id=guild_id, prev_tag="alpha", new_tag="alpha", **kwargs)


class TestApprovalRegistry:
    """Tests for create / claim / pending."""

    def test_create_and_get(self):
        """A created request is retrievable by id."""
        registry = ApprovalRegistry()
        approval = make(registry, other_user_id=1, new_image="https://cdn.example/new.png")
        assert registry.get(approval.request_id) == approval
        assert approval.request_id in registry
        assert approval.other_user_id == 1
        assert len(registry) == 1

    def test_ids_are_unique(self):
        """Many requests in the same second get distinct ids."""
        registry = ApprovalRegistry()
        ids = {make(registry).request_id for _ in range(50)}
        assert len(ids) == 50

    def test_claim_is_single_use(self):
        """The first claim returns the request, the second gets nothing."""
        registry = ApprovalRegistry()
        approval = make(registry)
        assert registry.claim(approval.request_id) == approval
        assert registry.claim(approval.request_id) is None
        assert approval.request_id not in registry

    def test_unknown_id(self):
        """Unknown ids are neither found nor deleted."""
        registry = ApprovalRegistry()
        assert registry.get("nope") is None
        assert registry.claim("nope") is None
        assert registry.delete("nope") is False

    def test_delete(self):
        """Delete reports whether something was removed."""
        registry = ApprovalRegistry()
        approval = make(registry)
        assert registry.delete(approval.request_id) is True
        assert len(registry) == 0

    def test_pending_by_guild(self):
        """Pending can be filtered to one guild."""
        registry = ApprovalRegistry()
        make(registry, guild_id=1)
        make(registry, guild_id=2)
        make(registry, guild_id=1)
        assert len(registry.pending()) == 3
        assert {a.guild_id for a in registry.pending(1)} == {1}
        assert len(registry.pending(1)) == 2


class TestArbitrationIds:
    """Tests for decoding arbitration button custom ids."""

    def test_approve(self):
        assert parse_arbitration_id(f"{APPROVE_PREFIX}1700000000-abc123") == (True, "1700000000-abc123")

    def test_deny(self):
        assert parse_arbitration_id(f"{DENY_PREFIX}1700000000-abc123") == (False, "1700000000-abc123")

    def test_other_buttons(self):
        """Other components are ignored."""
        assert parse_arbitration_id("comp:start_verify") is None
        assert parse_arbitration_id(None) is None
