import pytest
from pydantic import ValidationError

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import InboundMessage
from Mail_Router.mr_server.actions import AUTH_RULES, REQUEST_MODELS, Action

pytestmark = pytest.mark.asyncio

TX = "0x" + "c3" * 32
PUBLIC_ACTIONS = {
    "get-inbox", "get-status", "schedule-calendar-event", "send-direct-message",
    "set-privacy", "get-privacy", "resolve-address", "classify-address",
    "register-encryption-key", "generate-encryption-key", "get-audit-log",
    "molt-to-private", "register-identity", "upgrade-tier", "freeze-message",
    "delete-message", "check-payment-used", "record-payment-used", "purge-inbox",
}


# ── Closed action set ──

async def test_every_action_has_model_rule_and_handler(dispatcher):
    for action in Action:
        assert action in REQUEST_MODELS
        assert action in AUTH_RULES
        assert action in dispatcher._handlers


async def test_action_set_is_closed():
    assert PUBLIC_ACTIONS <= {a.value for a in Action}
    assert {a.value for a in Action} - PUBLIC_ACTIONS == {"get-calendar"}


@pytest.mark.parametrize("raw", ["drop-tables", "", None, "GET-INBOX"])
async def test_unknown_action_rejected(dispatcher, raw):
    with pytest.raises(errors.UnknownActionError):
        await dispatcher.dispatch({"action": raw, "identity": "alice"}, "test-secret")


async def test_missing_fields_fail_validation(dispatcher):
    with pytest.raises(ValidationError):
        await dispatcher.dispatch({"action": "get-inbox"})


async def test_foreign_identity_fails_validation(dispatcher):
    with pytest.raises(ValidationError):
        await dispatcher.dispatch({"action": "get-privacy", "identity": "alice@gmail.com"})


# ── Auth ──

async def test_secret_action_needs_secret(dispatcher, owner_key_hex):
    payload = {"action": "register-identity", "address": "alice", "ownerKey": owner_key_hex}
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch(payload)
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch(payload, "wrong")


async def test_owner_signature_accepted(dispatcher, register, signed):
    await register("alice")
    result = await dispatcher.dispatch(signed({"action": "get-inbox", "identity": "alice"}))
    assert result["count"] == 0


async def test_signature_for_other_action_rejected(dispatcher, register, signed):
    await register("alice")
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch({**signed({"action": "delete-message", "identity": "alice"}), "action": "get-inbox"})


async def test_signature_for_unregistered_identity_rejected(dispatcher, signed):
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch(signed({"action": "get-inbox", "identity": "alice"}))


async def test_purge_requires_owner_not_secret(dispatcher, register, signed, secret):
    await register("alice")
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch({"action": "purge-inbox", "identity": "alice"}, secret)
    result = await dispatcher.dispatch(signed({"action": "purge-inbox", "identity": "alice"}))
    assert result == {"identity": "alice", "deleted": 0}


async def test_open_actions_need_no_credentials(dispatcher):
    result = await dispatcher.dispatch({"action": "classify-address", "address": "punks.7804"})
    assert result["stream"] == "nft-collection"
    assert result["accepted"] is True


# ── Addresses ──

async def test_resolve_unregistered_is_available(dispatcher):
    result = await dispatcher.dispatch({"action": "resolve-address", "address": "alice"})
    assert result["stream"] == "sovereign"
    assert result["valid"] is True
    assert result["exists"] is False
    assert result["available"] is True


async def test_resolve_registered(dispatcher, register):
    await register("alice", publicAudit=True)
    result = await dispatcher.dispatch({"action": "resolve-address", "address": "alice@nftmail.box"})
    assert result["exists"] is True
    assert result["available"] is False
    assert result["tier"] == "basic"
    assert result["privacy"] == "exposed"
    assert result["glass_box"] is True
    assert result["has_encryption_key"] is False


async def test_resolve_dormant_is_not_available(dispatcher, register, clock):
    await register("alice")
    clock.advance_days(9)
    result = await dispatcher.dispatch({"action": "resolve-address", "address": "alice"})
    assert result["exists"] is False
    assert result["available"] is False
    assert result["dormant"] is True


async def test_resolve_invalid(dispatcher):
    result = await dispatcher.dispatch({"action": "resolve-address", "address": "alice.b0b"})
    assert result["valid"] is False
    assert result["reason"] == "mixed-alnum"
    assert result["available"] is False


# ── Identity and keys ──

async def test_register_identity(register):
    result = await register("ab_", automated=True)
    assert result["tier"] == "basic"
    assert result["stream"] == "agent"


async def test_register_nft_requires_ownership(register):
    with pytest.raises(errors.RejectedAddressError):
        await register("bayc.1")
    result = await register("punks.7804")
    assert result["identity"] == "punks.7804"


async def test_register_twice_taken(register):
    await register("alice")
    with pytest.raises(errors.IdentityTakenError):
        await register("alice")


async def test_register_and_use_encryption_key(dispatcher, register, secret, router, services):
    await register("ab_")
    generated = await dispatcher.dispatch({"action": "generate-encryption-key"})
    assert await services.keys.get("ab_") is None

    await dispatcher.dispatch(
        {"action": "register-encryption-key", "identity": "ab_", "publicKey": generated["public_key"]}, secret
    )
    receipt = await router.handle_inbound(InboundMessage("f@example.org", "ab_", "s", "b"))
    envelope = await services.inbox.get("ab_", receipt.message_id)
    assert services.engine.decrypt(envelope.ciphertext, generated["private_key"])


async def test_register_key_for_unknown_identity(dispatcher, secret, keypair):
    with pytest.raises(errors.IdentityNotFoundError):
        await dispatcher.dispatch(
            {"action": "register-encryption-key", "identity": "ab_", "publicKey": keypair[0]}, secret
        )


async def test_register_invalid_key(dispatcher, register, secret):
    await register("ab_")
    with pytest.raises(errors.InvalidKeyError):
        await dispatcher.dispatch({"action": "register-encryption-key", "identity": "ab_", "publicKey": "04ff"}, secret)


# ── Privacy and audit ──

async def test_privacy_defaults(dispatcher):
    agent = await dispatcher.dispatch({"action": "get-privacy", "identity": "ab_"})
    human = await dispatcher.dispatch({"action": "get-privacy", "identity": "alice"})
    assert agent["state"] == "private"
    assert human["state"] == "exposed"


async def test_set_privacy(dispatcher, register, secret):
    await register("alice")
    await dispatcher.dispatch({"action": "set-privacy", "identity": "alice", "state": "hard-privacy"}, secret)
    with pytest.raises(errors.PrivacyLockedError):
        await dispatcher.dispatch({"action": "set-privacy", "identity": "alice", "state": "exposed"}, secret)
    assert (await dispatcher.dispatch({"action": "get-privacy", "identity": "alice"}))["state"] == "hard-privacy"


async def test_set_privacy_invalid_state(dispatcher, register, secret):
    await register("alice")
    with pytest.raises(ValidationError):
        await dispatcher.dispatch({"action": "set-privacy", "identity": "alice", "state": "secret"}, secret)


async def test_molt_to_private(dispatcher, register, secret, router):
    await register("alice", publicAudit=True)
    await router.handle_inbound(InboundMessage("f@example.org", "alice", "before", "b"))
    await dispatcher.dispatch({"action": "molt-to-private", "identity": "alice"}, secret)
    await router.handle_inbound(InboundMessage("f@example.org", "alice", "after", "b"))

    log = await dispatcher.dispatch({"action": "get-audit-log", "identity": "alice"})
    assert log["tld"] == config.BLACK_BOX_TLD
    assert [e["subject"] for e in log["entries"]] == ["before"]
    assert len(log["transitions"]) == 1
    assert (await dispatcher.dispatch({"action": "get-privacy", "identity": "alice"}))["state"] == "private"

    with pytest.raises(errors.AlreadyMoltedError):
        await dispatcher.dispatch({"action": "molt-to-private", "identity": "alice"}, secret)


# ── Inbox management ──

async def test_freeze_pins_and_persists(dispatcher, register, secret, router, pinner, kv, services):
    await register("alice")
    receipt = await router.handle_inbound(InboundMessage("f@example.org", "alice", "keep", "b"))
    result = await dispatcher.dispatch(
        {"action": "freeze-message", "identity": "alice", "messageId": receipt.message_id}, secret
    )
    assert result["frozen"] is True
    assert result["ipfs_ref"].startswith("ipfs://")
    assert pinner.pinned == [receipt.message_id]
    assert await kv.ttl(services.inbox._envelope_key("alice", receipt.message_id)) == -1


async def test_freeze_survives_pin_failure(dispatcher, register, secret, router, pinner):
    await register("alice")
    pinner.fail = True
    receipt = await router.handle_inbound(InboundMessage("f@example.org", "alice", "keep", "b"))
    result = await dispatcher.dispatch(
        {"action": "freeze-message", "identity": "alice", "messageId": receipt.message_id}, secret
    )
    assert result["frozen"] is True
    assert result["ipfs_ref"] is None


async def test_freeze_missing_message(dispatcher, register, secret):
    await register("alice")
    with pytest.raises(errors.EnvelopeNotFoundError):
        await dispatcher.dispatch({"action": "freeze-message", "identity": "alice", "messageId": "nope"}, secret)


async def test_delete_message(dispatcher, register, secret, router):
    await register("alice")
    receipt = await router.handle_inbound(InboundMessage("f@example.org", "alice", "s", "b"))
    payload = {"action": "delete-message", "identity": "alice", "messageId": receipt.message_id}
    assert (await dispatcher.dispatch(payload, secret))["deleted"] is True
    assert (await dispatcher.dispatch(payload, secret))["deleted"] is False


async def test_owner_signature_bound_to_message(dispatcher, register, router, signed, services):
    await register("alice")
    first = await router.handle_inbound(InboundMessage("f@example.org", "alice", "one", "b"))
    second = await router.handle_inbound(InboundMessage("f@example.org", "alice", "two", "b"))

    payload = signed({"action": "delete-message", "identity": "alice", "messageId": first.message_id})
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch({**payload, "messageId": second.message_id})
    assert await services.inbox.get("alice", second.message_id) is not None

    assert (await dispatcher.dispatch(payload))["deleted"] is True


async def test_owner_signature_rejects_added_fields(dispatcher, register, signed):
    await register("alice")
    payload = signed({"action": "upgrade-tier", "identity": "alice", "txHash": TX, "tier": "upgraded"})
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch({**payload, "linkedWallet": "0x" + "ab" * 20})


async def test_get_inbox_lists_messages(dispatcher, register, secret, router):
    await register("alice")
    await router.handle_inbound(InboundMessage("f@example.org", "alice", "one", "b"))
    result = await dispatcher.dispatch({"action": "get-inbox", "identity": "alice"}, secret)
    assert result["count"] == 1
    assert result["messages"][0]["decay_pct"] == 0
    assert result["messages"][0]["plaintext"]["subject"] == "one"


# ── Status and calendar ──

async def test_get_status_includes_capabilities(dispatcher, register):
    await register("ab_")
    result = await dispatcher.dispatch({"action": "get-status", "identity": "ab_"})
    assert result["tier"] == "basic"
    assert result["capabilities"]["can_send"] is False


async def test_schedule_event_sends_invites(dispatcher, services, register, secret, clock):
    await register("ab_")
    await services.tiers.apply_upgrade("ab_", "upgraded")
    now = int(clock() * 1000)
    result = await dispatcher.dispatch({
        "action": "schedule-calendar-event",
        "organizer": "ab_",
        "title": "sync",
        "startTime": now + 60_000,
        "endTime": now + 120_000,
        "participants": ["cd_", "bob.42"],
    }, secret)
    assert result["invites_sent"] == ["cd_"]
    assert result["invites_failed"] == [{"participant": "bob.42", "reason": "unknown-collection"}]

    invites = await services.inbox.get_all("cd_")
    assert invites[0].envelope.channel == "ghost-wire"
    assert invites[0].envelope.sender_agent == "ab_"
    events = await dispatcher.dispatch({"action": "get-calendar", "identity": "cd_"})
    assert events["events"][0]["title"] == "sync"


async def test_schedule_event_requires_credentials(dispatcher, services, clock):
    now = int(clock() * 1000)
    with pytest.raises(errors.AuthRequiredError):
        await dispatcher.dispatch({
            "action": "schedule-calendar-event",
            "organizer": "mallory",
            "title": "x",
            "startTime": now + 60_000,
            "endTime": now + 120_000,
            "participants": ["victim"],
        })
    assert await services.inbox.get_all("victim") == []


async def test_schedule_event_unregistered_organizer(dispatcher, services, secret, clock):
    now = int(clock() * 1000)
    with pytest.raises(errors.IdentityNotFoundError):
        await dispatcher.dispatch({
            "action": "schedule-calendar-event",
            "organizer": "mallory",
            "title": "x",
            "startTime": now + 60_000,
            "endTime": now + 120_000,
            "participants": ["victim"],
        }, secret)
    assert await services.inbox.get_all("victim") == []


async def test_basic_organizer_cannot_send_invites(dispatcher, services, register, signed, clock):
    await register("ab_")
    now = int(clock() * 1000)
    result = await dispatcher.dispatch(signed({
        "action": "schedule-calendar-event",
        "organizer": "ab_",
        "title": "sync",
        "startTime": now + 60_000,
        "endTime": now + 120_000,
        "participants": ["victim"],
    }, identity="ab_"))
    assert result["invites_sent"] == []
    assert result["invites_failed"] == [{"participant": "victim", "reason": "send-not-permitted"}]
    assert await services.inbox.get_all("victim") == []


async def test_schedule_invalid_event(dispatcher, register, secret):
    await register("ab_")
    with pytest.raises(errors.InvalidEventError):
        await dispatcher.dispatch({
            "action": "schedule-calendar-event",
            "organizer": "ab_",
            "type": "PARTY",
            "title": "x",
            "startTime": 0,
            "endTime": 1,
        }, secret)


async def test_send_direct_message_requires_upgrade(dispatcher, register, secret):
    await register("ab_")
    payload = {"action": "send-direct-message", "fromAgent": "ab_", "toAgent": "cd_", "content": "ping"}
    with pytest.raises(errors.CapabilityDeniedError):
        await dispatcher.dispatch(payload, secret)


# ── Payments ──

async def test_upgrade_tier_action(dispatcher, register, secret, chain, make_native_tx):
    await register("alice")
    chain.transactions[TX] = make_native_tx(10 * 10**18)
    result = await dispatcher.dispatch(
        {"action": "upgrade-tier", "identity": "alice", "txHash": TX, "tier": "upgraded"}, secret
    )
    assert result["tier"] == "upgraded"
    assert result["capabilities"]["can_send"] is True

    used = await dispatcher.dispatch({"action": "check-payment-used", "txHash": TX})
    assert used["used"] is True
    assert used["record"]["identity"] == "alice"


async def test_upgrade_unknown_identity(dispatcher, secret):
    with pytest.raises(errors.IdentityNotFoundError):
        await dispatcher.dispatch({"action": "upgrade-tier", "identity": "alice", "txHash": TX, "tier": "full"}, secret)


async def test_upgrade_rejects_bad_wallet(dispatcher, secret):
    with pytest.raises(ValidationError):
        await dispatcher.dispatch(
            {"action": "upgrade-tier", "identity": "alice", "txHash": TX, "tier": "full", "linkedWallet": "0x12"},
            secret,
        )


async def test_record_payment_used(dispatcher, secret):
    payload = {"action": "record-payment-used", "identity": "alice", "txHash": TX, "tier": "full"}
    await dispatcher.dispatch(payload, secret)
    with pytest.raises(errors.PaymentAlreadyUsedError):
        await dispatcher.dispatch(payload, secret)
    assert (await dispatcher.dispatch({"action": "check-payment-used", "txHash": TX}))["used"] is True


async def test_payment_reference_format_checked(dispatcher):
    with pytest.raises(errors.UpgradeDeniedError):
        await dispatcher.dispatch({"action": "check-payment-used", "txHash": "0x123"})
