"""
Tests for SubscriptionInheritanceResolver.

Focus areas:
- Pair derivation in every direct/none/inherited combination
- Inheritance never chains
- At most one beneficiary per direct source
- Unlink path only strips what the removed partner granted
- Entitlement proof results
"""

import pytest

from couplelink.models.account import SubscriptionType
from couplelink.services.subscription_inheritance import (
    BLOCKED_SOURCE_ALREADY_SHARED,
    SubscriptionInheritanceResolver,
    shares_subscription,
)


@pytest.fixture
def resolver(db_session):
    return SubscriptionInheritanceResolver(db_session, correlation_id="test-corr")


class TestApplyPair:

    def test_direct_shares_with_unsubscribed_partner(self, resolver, make_account):
        source = make_account("source", subscription_type=SubscriptionType.DIRECT, partner_id="beneficiary")
        beneficiary = make_account("beneficiary", partner_id="source")

        derivation = resolver.apply_pair(beneficiary, source)

        assert derivation.granted_to == "beneficiary"
        assert derivation.changed_account_ids == ["beneficiary"]
        assert beneficiary.subscription_type == SubscriptionType.INHERITED
        assert beneficiary.is_subscribed is True
        assert beneficiary.subscription_source_account_id == "source"
        assert beneficiary.subscription_source_timestamp is not None
        assert shares_subscription(source, beneficiary)

    def test_order_of_arguments_does_not_matter(self, resolver, make_account):
        source = make_account("source", subscription_type=SubscriptionType.DIRECT, partner_id="beneficiary")
        beneficiary = make_account("beneficiary", partner_id="source")

        resolver.apply_pair(source, beneficiary)

        assert beneficiary.subscription_source_account_id == "source"

    def test_both_direct_is_unchanged(self, resolver, make_account):
        a = make_account("a", subscription_type=SubscriptionType.DIRECT, partner_id="b")
        b = make_account("b", subscription_type=SubscriptionType.DIRECT, partner_id="a")

        derivation = resolver.apply_pair(a, b)

        assert derivation.changed is False
        assert a.is_direct and b.is_direct
        assert not shares_subscription(a, b)

    def test_neither_direct_strips_stale_inheritance(self, resolver, make_account):
        a = make_account("a", subscription_type=SubscriptionType.INHERITED, partner_id="b", source_id="b")
        b = make_account("b", partner_id="a")

        derivation = resolver.apply_pair(a, b)

        assert derivation.stripped == ["a"]
        assert a.subscription_type == SubscriptionType.NONE
        assert a.is_subscribed is False
        assert a.subscription_source_account_id is None
        assert a.subscription_source_timestamp is None

    def test_already_inherited_is_a_no_op(self, resolver, make_account):
        source = make_account("source", subscription_type=SubscriptionType.DIRECT, partner_id="beneficiary")
        beneficiary = make_account(
            "beneficiary",
            subscription_type=SubscriptionType.INHERITED,
            partner_id="source",
            source_id="source",
        )

        assert resolver.apply_pair(beneficiary, source).changed is False

    def test_second_beneficiary_is_blocked(self, resolver, make_account):
        source = make_account("source", subscription_type=SubscriptionType.DIRECT, partner_id="newcomer")
        make_account("earlier", subscription_type=SubscriptionType.INHERITED, source_id="source")
        newcomer = make_account("newcomer", partner_id="source")

        derivation = resolver.apply_pair(newcomer, source)

        assert derivation.inheritance_blocked == BLOCKED_SOURCE_ALREADY_SHARED
        assert derivation.granted_to is None
        assert newcomer.subscription_type == SubscriptionType.NONE
        assert not shares_subscription(newcomer, source)


class TestGrant:

    def test_inherited_account_is_never_a_source(self, resolver, make_account):
        make_account("root", subscription_type=SubscriptionType.DIRECT)
        middle = make_account("middle", subscription_type=SubscriptionType.INHERITED, source_id="root")
        leaf = make_account("leaf")

        assert resolver.grant(leaf, middle) is False
        assert leaf.subscription_type == SubscriptionType.NONE

    def test_direct_beneficiary_is_never_overwritten(self, resolver, make_account):
        source = make_account("source", subscription_type=SubscriptionType.DIRECT)
        other = make_account("other", subscription_type=SubscriptionType.DIRECT)

        assert resolver.grant(other, source) is False
        assert other.is_direct

    def test_self_grant_is_refused(self, resolver, make_account):
        source = make_account("source", subscription_type=SubscriptionType.DIRECT)

        assert resolver.grant(source, source) is False

    def test_has_other_beneficiary(self, resolver, make_account):
        make_account("source", subscription_type=SubscriptionType.DIRECT)
        make_account("earlier", subscription_type=SubscriptionType.INHERITED, source_id="source")

        assert resolver.has_other_beneficiary("source", "newcomer") is True
        assert resolver.has_other_beneficiary("source", "earlier") is False


class TestUnlink:

    def test_strips_entitlement_from_removed_partner(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.INHERITED, source_id="b")

        assert resolver.release_on_unlink(account, "b") is True
        assert account.subscription_type == SubscriptionType.NONE

    def test_keeps_entitlement_from_someone_else(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.INHERITED, source_id="c")

        assert resolver.release_on_unlink(account, "b") is False
        assert account.is_inherited

    def test_never_touches_direct(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.DIRECT)

        assert resolver.release_on_unlink(account, "b") is False
        assert resolver.strip(account) is False
        assert account.is_direct


class TestApplyDirectStatus:

    def test_valid_proof_makes_account_direct(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.INHERITED, source_id="b")

        assert resolver.apply_direct_status(account, True) is True
        assert account.is_direct
        assert account.is_subscribed is True
        assert account.subscription_source_account_id is None

    def test_valid_proof_on_direct_is_unchanged(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.DIRECT)

        assert resolver.apply_direct_status(account, True) is False

    def test_invalid_proof_drops_direct(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.DIRECT)

        assert resolver.apply_direct_status(account, False) is True
        assert account.subscription_type == SubscriptionType.NONE
        assert account.is_subscribed is False

    def test_invalid_proof_leaves_inherited_alone(self, resolver, make_account):
        account = make_account("a", subscription_type=SubscriptionType.INHERITED, source_id="b")

        assert resolver.apply_direct_status(account, False) is False
        assert account.is_inherited
