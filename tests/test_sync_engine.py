"""Tests for the mailbox sync engine."""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from mailfacts.auth.google_oauth import TokenGrant
from mailfacts.auth.vault import CredentialVault
from mailfacts.config_schema import AppConfig
from mailfacts.core.errors import (
    AuthenticationError,
    GmailAPIError,
    HistoryExpiredError,
    UserNotFoundError,
)
from mailfacts.db.store import DatabaseStore
from mailfacts.engine.sync import SyncEngine
from mailfacts.gmail.client import HistoryPage


def _raw(msg_id: str, history_id: int = 100) -> dict[str, Any]:
    return {
        "id": msg_id,
        "threadId": "t-" + msg_id,
        "historyId": str(history_id),
        "internalDate": "1773532800000",
        "snippet": "snippet " + msg_id,
        "labelIds": ["INBOX"],
        "payload": {
            "mimeType": "text/plain",
            "headers": [{"name": "Subject", "value": "Subject " + msg_id}],
            "body": {},
        },
    }


class FakeGmailClient:
    """In-memory stand-in for GmailClient."""

    def __init__(
        self,
        messages: dict[str, dict[str, Any]] | None = None,
        history_ids: list[str] | None = None,
        listed_ids: list[str] | None = None,
        history_id: str = "2000",
        expired: bool = False,
        failing: tuple[str, ...] = (),
    ):
        self.messages = messages or {}
        self.history_ids = history_ids or []
        self.listed_ids = listed_ids if listed_ids is not None else list(self.messages)
        self.history_id = history_id
        self.expired = expired
        self.failing = failing
        self.fetched: list[str] = []
        self.history_calls: list[str] = []
        self.list_calls: list[datetime] = []
        self.closed = False

    def list_history(self, start_history_id: str, max_results: int = 500) -> HistoryPage:
        self.history_calls.append(start_history_id)
        if self.expired:
            raise HistoryExpiredError("expired", start_history_id=start_history_id)
        return HistoryPage(message_ids=list(self.history_ids), history_id=self.history_id)

    def list_message_ids(self, after: datetime, max_results: int = 500) -> list[str]:
        self.list_calls.append(after)
        return list(self.listed_ids)

    def get_message(self, message_id: str) -> dict[str, Any]:
        self.fetched.append(message_id)
        if message_id in self.failing:
            raise GmailAPIError("backend error", status_code=500)
        return self.messages[message_id]

    def close(self) -> None:
        self.closed = True


def _make_engine(
    store: DatabaseStore,
    vault: CredentialVault,
    config: AppConfig,
    client: FakeGmailClient,
    oauth: MagicMock | None = None,
) -> tuple[SyncEngine, MagicMock]:
    factory = MagicMock(return_value=client)
    engine = SyncEngine(
        store=store,
        vault=vault,
        oauth=oauth or MagicMock(),
        config=config,
        client_factory=factory,
    )
    return engine, factory


@pytest.fixture
async def user_store(store: DatabaseStore, vault: CredentialVault) -> DatabaseStore:
    await store.upsert_user(
        "alice",
        email="alice@example.com",
        access_token_enc=vault.encrypt("valid-access"),
        refresh_token_enc=vault.encrypt("refresh"),
        token_expires_at=datetime.now(UTC) + timedelta(hours=1),
    )
    return store


async def test_unknown_user_raises(
    store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
) -> None:
    engine, _ = _make_engine(store, vault, sample_config, FakeGmailClient())

    with pytest.raises(UserNotFoundError):
        await engine.sync("nobody")


class TestFirstSync:
    async def test_stores_messages_and_derives_cursor(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        client = FakeGmailClient(
            messages={"m1": _raw("m1", 101), "m2": _raw("m2", 205), "m3": _raw("m3", 150)}
        )
        engine, factory = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.status == "ok"
        assert result.used_fallback is True
        assert (result.discovered, result.fetched, result.stored) == (3, 3, 3)
        assert result.cursor == "205"
        factory.assert_called_once_with("valid-access")
        assert client.closed

        user = await user_store.get_user("alice")
        assert user.sync_status == "idle"
        assert user.history_cursor == "205"
        assert user.last_synced_at is not None
        stored = await user_store.get_message_by_provider_id("alice", "m2")
        assert stored.subject == "Subject m2"

    async def test_first_sync_looks_back_configured_days(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        client = FakeGmailClient(messages={})
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.status == "ok"
        expected = datetime.now(UTC) - timedelta(days=sample_config.sync.lookback_days)
        assert abs((client.list_calls[0] - expected).total_seconds()) < 60
        assert (await user_store.get_user("alice")).history_cursor == ""

    async def test_duplicate_ids_are_fetched_once(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        client = FakeGmailClient(messages={"m1": _raw("m1")}, listed_ids=["m1", "m1", "m1"])
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.discovered == 1
        assert client.fetched == ["m1"]

    async def test_batches_respect_fetch_batch_size(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        config = sample_config.model_copy(
            update={"sync": sample_config.sync.model_copy(update={"fetch_batch_size": 2})}
        )
        client = FakeGmailClient(messages={f"m{i}": _raw(f"m{i}", 100 + i) for i in range(5)})
        engine, _ = _make_engine(user_store, vault, config, client)

        result = await engine.sync("alice")

        assert result.stored == 5
        assert sorted(client.fetched) == [f"m{i}" for i in range(5)]


class TestIncrementalSync:
    async def test_second_run_is_idempotent(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        messages = {"m1": _raw("m1", 300), "m2": _raw("m2", 301)}
        first, _ = _make_engine(user_store, vault, sample_config, FakeGmailClient(messages))
        await first.sync("alice")

        client = FakeGmailClient(messages, history_ids=["m1", "m2"], history_id="301")
        second, _ = _make_engine(user_store, vault, sample_config, client)
        result = await second.sync("alice")

        assert client.history_calls == ["301"]
        assert result.used_fallback is False
        assert (result.fetched, result.stored, result.skipped) == (2, 0, 2)
        assert (await user_store.get_user("alice")).history_cursor == "301"

    async def test_history_advances_cursor(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        await user_store.try_begin_sync("alice")
        await user_store.finish_sync("alice", status="idle", cursor="1000")
        client = FakeGmailClient({"m9": _raw("m9", 1500)}, history_ids=["m9"], history_id="1600")
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.stored == 1
        assert result.cursor == "1600"
        assert (await user_store.get_user("alice")).history_cursor == "1600"

    async def test_no_changes_keeps_cursor(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        await user_store.try_begin_sync("alice")
        await user_store.finish_sync("alice", status="idle", cursor="1000")
        engine, _ = _make_engine(
            user_store, vault, sample_config, FakeGmailClient(history_id="1000")
        )

        result = await engine.sync("alice")

        assert result.status == "ok"
        assert result.discovered == 0
        assert (await user_store.get_user("alice")).history_cursor == "1000"

    async def test_expired_cursor_falls_back(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        await user_store.try_begin_sync("alice")
        await user_store.finish_sync("alice", status="idle", cursor="1000")
        last_synced = (await user_store.get_user("alice")).last_synced_at
        client = FakeGmailClient(
            {"a": _raw("a", 4000), "b": _raw("b", 4200)}, expired=True
        )
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.status == "ok"
        assert result.used_fallback is True
        assert client.list_calls == [last_synced]
        assert result.stored == 2
        assert (await user_store.get_user("alice")).history_cursor == "4200"


class TestFailures:
    async def test_conflict_leaves_state_untouched(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        assert await user_store.try_begin_sync("alice")
        engine, factory = _make_engine(user_store, vault, sample_config, FakeGmailClient())

        result = await engine.sync("alice")

        assert result.status == "conflict"
        factory.assert_not_called()
        user = await user_store.get_user("alice")
        assert user.sync_status == "syncing"
        assert user.last_synced_at is None

    async def test_failed_fetch_is_dropped_not_counted(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        client = FakeGmailClient(
            {"ok": _raw("ok", 10), "bad": _raw("bad", 99)}, failing=("bad",)
        )
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.status == "ok"
        assert result.discovered == 2
        assert (result.fetched, result.stored, result.failed) == (1, 1, 0)
        assert result.cursor == "10"

    async def test_unstorable_message_counts_as_failed(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        broken = _raw("x")
        del broken["id"]
        client = FakeGmailClient({"good": _raw("good"), "x": broken})
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert (result.fetched, result.stored, result.failed) == (2, 1, 1)
        assert result.stored + result.skipped + result.failed == result.fetched

    async def test_discovery_error_releases_lock_with_error(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        client = FakeGmailClient()
        client.list_message_ids = MagicMock(side_effect=GmailAPIError("boom", status_code=500))
        engine, _ = _make_engine(user_store, vault, sample_config, client)

        result = await engine.sync("alice")

        assert result.status == "error"
        assert "boom" in result.error
        assert client.closed
        user = await user_store.get_user("alice")
        assert user.sync_status == "error"
        assert await user_store.try_begin_sync("alice") is True


class TestTokens:
    async def test_expired_access_token_is_refreshed_and_persisted(
        self, store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        await store.upsert_user(
            "alice",
            access_token_enc=vault.encrypt("stale"),
            refresh_token_enc=vault.encrypt("refresh-1"),
            token_expires_at=datetime.now(UTC) + timedelta(minutes=1),
        )
        new_expiry = datetime.now(UTC) + timedelta(hours=1)
        oauth = MagicMock()
        oauth.refresh_access_token.return_value = TokenGrant("fresh", new_expiry)
        engine, factory = _make_engine(store, vault, sample_config, FakeGmailClient(), oauth)

        result = await engine.sync("alice")

        assert result.status == "ok"
        oauth.refresh_access_token.assert_called_once_with("refresh-1")
        factory.assert_called_once_with("fresh")
        user = await store.get_user("alice")
        assert vault.decrypt(user.access_token_enc) == "fresh"
        assert user.token_expires_at == new_expiry.replace(microsecond=0)

    async def test_valid_access_token_is_not_refreshed(
        self, user_store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        oauth = MagicMock()
        engine, _ = _make_engine(user_store, vault, sample_config, FakeGmailClient(), oauth)

        await engine.sync("alice")

        oauth.refresh_access_token.assert_not_called()

    async def test_missing_refresh_token_is_auth_error(
        self, store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        await store.upsert_user("alice")
        engine, factory = _make_engine(store, vault, sample_config, FakeGmailClient())

        result = await engine.sync("alice")

        assert result.status == "error"
        factory.assert_not_called()
        assert (await store.get_user("alice")).sync_status == "error"

    async def test_rejected_refresh_is_auth_error(
        self, store: DatabaseStore, vault: CredentialVault, sample_config: AppConfig
    ) -> None:
        await store.upsert_user("alice", refresh_token_enc=vault.encrypt("revoked"))
        oauth = MagicMock()
        oauth.refresh_access_token.side_effect = AuthenticationError("invalid_grant")
        engine, _ = _make_engine(store, vault, sample_config, FakeGmailClient(), oauth)

        result = await engine.sync("alice")

        assert result.status == "error"
        assert "invalid_grant" in result.error
        user = await store.get_user("alice")
        assert user.sync_status == "error"
        assert user.access_token_enc == ""
