"""Tests for the entity models and their pure transitions.

Created: 2026-10-19
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from chainpulse.entities import (
    DAILY_HISTORY_DAYS,
    AnalyticsSession,
    add_tags,
    create_contract,
    create_session,
    create_user,
    end_session,
    link_assets,
    set_token_balance,
    update_contract,
    update_session_stats,
    update_user_stats,
)
from chainpulse.errors import InvalidNumeric, InvalidPayload
from chainpulse.metadata import METADATA_MAX_KEYS, overlay

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------
# Users
# ---------------------------------------------------------------


class TestUser:
    def test_create_defaults(self):
        user = create_user("u1", "0xABC", now=T0)
        assert user.wallet_address == "0xabc"
        assert user.first_seen == user.last_seen == T0
        assert user.total_sessions == 0
        assert user.total_interactions == 0
        assert user.total_transactions == 0
        assert user.total_gas_spent == "0"
        assert user.tokens_held == {}
        assert user.metadata == {}

    def test_scenario_interactions_and_gas(self):
        user = create_user("U", "0xabc", now=T0)
        user = update_user_stats(
            user, new_interaction=True, gas_spent="1000000000000000000", now=T0
        )
        user = update_user_stats(user, new_interaction=True, now=T0)
        user = update_user_stats(user, new_interaction=True, now=T0)
        user = update_user_stats(
            user, new_transaction=True, gas_spent="2500000000000000000", now=T0
        )

        assert user.total_interactions == 3
        assert user.total_transactions == 1
        assert user.total_sessions == 0
        assert user.total_gas_spent == "3500000000000000000"

    def test_counters_match_applied_events(self):
        user = create_user("u", "0x1", now=T0)
        kinds = ["session", "interaction", "transaction", "interaction", "session", "interaction"]
        previous = user
        for i, kind in enumerate(kinds):
            user = update_user_stats(
                user,
                new_session=kind == "session",
                new_interaction=kind == "interaction",
                new_transaction=kind == "transaction",
                now=T0 + timedelta(minutes=i),
            )
            assert user.total_sessions >= previous.total_sessions
            assert user.total_interactions >= previous.total_interactions
            assert user.total_transactions >= previous.total_transactions
            previous = user

        assert user.total_sessions == kinds.count("session")
        assert user.total_interactions == kinds.count("interaction")
        assert user.total_transactions == kinds.count("transaction")

    def test_update_does_not_mutate_input(self):
        user = create_user("u", "0x1", metadata={"plan": "free"}, now=T0)
        updated = update_user_stats(user, new_interaction=True, metadata={"plan": "pro"}, now=T0)
        assert user.total_interactions == 0
        assert user.metadata == {"plan": "free"}
        assert updated.metadata == {"plan": "pro"}

    def test_last_seen_never_moves_back(self):
        user = create_user("u", "0x1", now=T0)
        later = update_user_stats(user, new_interaction=True, now=T0 + timedelta(hours=1))
        stale = update_user_stats(later, new_interaction=True, now=T0 - timedelta(hours=1))
        assert stale.last_seen == T0 + timedelta(hours=1)
        assert stale.last_seen >= stale.first_seen

    def test_bad_gas_rejected_without_change(self):
        user = create_user("u", "0x1", now=T0)
        with pytest.raises(InvalidNumeric):
            update_user_stats(user, new_transaction=True, gas_spent="1e18", now=T0)
        assert user.total_transactions == 0

    def test_assets_never_negative(self):
        user = create_user("u", "0x1", now=T0)
        user = link_assets(user, 1, now=T0)
        user = link_assets(user, -1, now=T0)
        user = link_assets(user, -1, now=T0)
        assert user.assets_linked == 0

    def test_token_balance(self):
        user = create_user("u", "0x1", now=T0)
        user = set_token_balance(user, "USDC", "000250", now=T0)
        user = set_token_balance(user, "ETH", "1", now=T0)
        assert user.tokens_held == {"USDC": "250", "ETH": "1"}
        with pytest.raises(InvalidNumeric):
            set_token_balance(user, "ETH", "-1", now=T0)

    def test_tags_are_a_set(self):
        user = create_user("u", "0x1", tags=["whale", "early"], now=T0)
        user = add_tags(user, ["whale", "nft"])
        assert user.tags == ["early", "nft", "whale"]

    def test_blank_address_rejected(self):
        with pytest.raises(InvalidPayload):
            create_user("u", "   ", now=T0)

    def test_naive_now_is_utc(self):
        user = create_user("u", "0x1", now=datetime(2026, 10, 19, 12, 0))
        assert user.first_seen == T0
        later = update_user_stats(user, new_interaction=True, now=T0 + timedelta(hours=1))
        assert later.last_seen == T0 + timedelta(hours=1)

    def test_daily_buckets(self):
        user = create_user("u", "0x1", now=T0)
        user = update_user_stats(user, new_transaction=True, gas_spent="10", now=T0)
        user = update_user_stats(user, new_transaction=True, gas_spent="5", now=T0)
        user = update_user_stats(user, new_interaction=True, now=T0)
        user = update_user_stats(
            user, new_transaction=True, gas_spent="1", now=T0 + timedelta(days=1)
        )
        assert user.daily["2026-10-19"].transactions == 2
        assert user.daily["2026-10-19"].gas_spent == "15"
        assert user.daily["2026-10-20"].gas_spent == "1"
        assert user.total_gas_spent == "16"

    def test_daily_history_is_bounded(self):
        user = create_user("u", "0x1", now=T0)
        for day in range(DAILY_HISTORY_DAYS + 2):
            user = update_user_stats(
                user, new_transaction=True, now=T0 + timedelta(days=day)
            )
        assert len(user.daily) == DAILY_HISTORY_DAYS
        assert "2026-10-19" not in user.daily
        assert user.total_transactions == DAILY_HISTORY_DAYS + 2


# ---------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------


class TestSession:
    def test_create_counts_entry_page(self):
        session = create_session("S1", entry_page="home", now=T0)
        assert session.is_active
        assert session.page_views == 1
        assert session.interactions == 0
        assert session.end_time is None
        assert session.duration is None

    def test_scenario_page_views_then_end(self):
        session = create_session("S1", entry_page="home", now=T0)
        session = update_session_stats(session, page_view=True, current_page="shop")
        session = update_session_stats(session, page_view=True, current_page="cart")
        session = update_session_stats(session, interaction=True)
        session = end_session(session, "checkout", now=T0 + timedelta(minutes=5))

        assert session.page_views == 3
        assert session.interactions == 1
        assert session.is_active is False
        assert session.exit_page == "checkout"
        assert session.duration == session.end_time - session.start_time
        assert session.duration == timedelta(minutes=5)

    def test_repeated_end_preserves_end_and_duration(self):
        session = create_session("S1", now=T0)
        ended = end_session(session, "a", now=T0 + timedelta(minutes=1))
        again = end_session(ended, now=T0 + timedelta(minutes=9))
        assert again.end_time == ended.end_time
        assert again.duration == ended.duration
        assert again.exit_page == "a"

    def test_repeated_end_with_exit_page_only_updates_exit_page(self):
        session = create_session("S1", now=T0)
        ended = end_session(session, "a", now=T0 + timedelta(minutes=1))
        again = end_session(ended, "b", now=T0 + timedelta(minutes=9))
        assert again.exit_page == "b"
        assert again.end_time == ended.end_time
        assert again.duration == timedelta(minutes=1)

    def test_ended_session_counters_frozen(self):
        session = end_session(create_session("S1", now=T0), now=T0 + timedelta(seconds=1))
        after = update_session_stats(session, page_view=True, interaction=True, current_page="x")
        assert after == session

    def test_end_before_start_clamped(self):
        session = create_session("S1", now=T0)
        ended = end_session(session, now=T0 - timedelta(minutes=1))
        assert ended.end_time == T0
        assert ended.duration == timedelta(0)

    def test_naive_start_then_aware_end(self):
        session = create_session("S1", now=datetime(2026, 10, 19, 12, 0))
        ended = end_session(session, now=T0 + timedelta(minutes=5))
        assert ended.start_time == T0
        assert ended.duration == timedelta(minutes=5)

    def test_lifecycle_invariant_checked_on_load(self):
        with pytest.raises(ValidationError):
            AnalyticsSession(id="s", start_time=T0, is_active=False)
        with pytest.raises(ValidationError):
            AnalyticsSession(
                id="s",
                start_time=T0,
                end_time=T0 + timedelta(minutes=2),
                duration=timedelta(minutes=1),
                is_active=False,
            )


# ---------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------


class TestContract:
    def test_create(self):
        contract = create_contract("0xC0FFEE", name="Vault", contract_type="erc4626", now=T0)
        assert contract.address == "0xc0ffee"
        assert contract.total_interactions == 0
        assert contract.unique_users == 0
        assert contract.gas_used == "0"
        assert contract.last_interaction == T0

    def test_unique_users_counts_distinct_addresses(self):
        contract = create_contract("0xc", now=T0)
        previous = contract.unique_users
        for addr in ["0xa", "0xb", "0xA", "0xa", None, "0xc"]:
            contract = update_contract(contract, "Transfer", user_address=addr, now=T0)
            assert contract.unique_users >= previous
            previous = contract.unique_users

        assert contract.total_interactions == 6
        assert contract.unique_users == 3

    def test_events_and_gas(self):
        contract = create_contract("0xc", now=T0)
        contract = update_contract(contract, "Transfer", gas_used="21000", now=T0)
        contract = update_contract(contract, "Approval", gas_used="46000", now=T0)
        contract = update_contract(contract, "Transfer", now=T0)
        assert contract.events == {"Transfer": 2, "Approval": 1}
        assert contract.gas_used == "67000"

    def test_metadata_overlay(self):
        contract = create_contract("0xc", metadata={"chain": "base", "audited": False}, now=T0)
        contract = update_contract(contract, "Mint", metadata={"audited": True}, now=T0)
        assert contract.metadata == {"chain": "base", "audited": True}

    def test_empty_event_name_rejected(self):
        with pytest.raises(InvalidPayload):
            update_contract(create_contract("0xc", now=T0), "", now=T0)


# ---------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------


class TestMetadata:
    def test_overlay_preserves_unspecified_keys(self):
        assert overlay({"a": 1, "b": 2}, {"b": 3, "c": None}) == {"a": 1, "b": 3, "c": None}

    def test_overlay_does_not_mutate(self):
        base = {"a": 1}
        overlay(base, {"a": 2})
        assert base == {"a": 1}

    def test_rejects_nested_values(self):
        with pytest.raises(InvalidPayload):
            overlay({}, {"tags": ["a", "b"]})

    def test_rejects_too_many_keys(self):
        big = {f"k{i}": i for i in range(METADATA_MAX_KEYS)}
        with pytest.raises(InvalidPayload):
            overlay(big, {"one_more": 1})
