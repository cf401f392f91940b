# tests/test_bridge.py
"""
Verify / status / revoke lifecycle against an in-memory ledger.
"""
import asyncio

import pytest

from bridge import VerificationStateBridge
from errors import (
    AlreadyPending,
    InvalidAddress,
    InvalidSignature,
    LedgerCallFailed,
    LedgerTimeout,
    RevokeNotAuthorized,
    VerificationFailed,
)
from conftest import SIGN_IN_MESSAGE, run, sign


def _verify(bridge, wallet, message=SIGN_IN_MESSAGE):
    return run(bridge.verify(wallet.address, sign(wallet, message), message))


# ────────────────────────────────────────────────────────────
# status
# ────────────────────────────────────────────────────────────

class TestStatus:
    def test_unknown_account_is_unverified(self, bridge, wallet):
        result = run(bridge.status(wallet.address))
        assert result.verified is False
        assert result.pseudonym_id is None
        assert result.timestamp is None

    def test_invalid_address_never_reaches_ledger(self, bridge, ledger):
        with pytest.raises(InvalidAddress):
            run(bridge.status("not-an-address"))
        assert ledger.reads == 0

    def test_timeout_is_classified(self, bridge, ledger, wallet):
        ledger.read_error = LedgerTimeout("slow", {"operation": "isVerified"})
        with pytest.raises(LedgerTimeout) as exc:
            run(bridge.status(wallet.address))
        assert exc.value.details["cause"] == "timeout"

    def test_decode_failure_is_classified(self, bridge, ledger, wallet):
        ledger.read_error = LedgerCallFailed("bad output", {"reason": "interface_mismatch"})
        with pytest.raises(LedgerCallFailed) as exc:
            run(bridge.status(wallet.address))
        assert exc.value.details["cause"] == "call_failed"

    def test_ledger_is_authoritative(self, bridge, ledger, wallet):
        verified = _verify(bridge, wallet)
        # Revoked on-chain by someone else
        ledger.verified[wallet.address.lower()] = False
        result = run(bridge.status(wallet.address))
        assert result.verified is False
        assert result.pseudonym_id == verified.pseudonym_id

    def test_unprefixed_address_finds_the_record(self, bridge, wallet):
        verified = _verify(bridge, wallet)
        for spelling in (wallet.address[2:], wallet.address[2:].lower(), wallet.address.upper()[2:]):
            result = run(bridge.status(spelling))
            assert result.account == wallet.address.lower()
            assert result.verified is True
            assert result.pseudonym_id == verified.pseudonym_id


# ────────────────────────────────────────────────────────────
# verify
# ────────────────────────────────────────────────────────────

class TestVerify:
    def test_verify_then_status(self, bridge, wallet):
        result = _verify(bridge, wallet)
        assert result.pseudonym_id.startswith("ghost_")
        assert result.tx_hash.startswith("0x")

        status = run(bridge.status(wallet.address))
        assert status.verified is True
        assert status.pseudonym_id == result.pseudonym_id
        assert status.timestamp is not None

    def test_checksum_and_lowercase_address_are_the_same_account(self, bridge, wallet):
        first = _verify(bridge, wallet)
        status = run(bridge.status(wallet.address.lower()))
        assert status.pseudonym_id == first.pseudonym_id

    def test_reverify_keeps_pseudonym(self, bridge, ledger, wallet):
        first = _verify(bridge, wallet)
        second = _verify(bridge, wallet)
        assert second.pseudonym_id == first.pseudonym_id
        assert second.tx_hash != first.tx_hash
        assert len(ledger.submissions) == 2

    def test_distinct_accounts_get_distinct_pseudonyms(self, bridge, wallet, other_wallet):
        assert _verify(bridge, wallet).pseudonym_id != _verify(bridge, other_wallet).pseudonym_id

    def test_wrong_signer_is_rejected_without_submission(self, bridge, ledger, wallet, other_wallet):
        signature = sign(other_wallet)
        with pytest.raises(InvalidSignature):
            run(bridge.verify(wallet.address, signature, SIGN_IN_MESSAGE))
        assert ledger.submissions == []
        assert bridge.store.get(wallet.address.lower()) is None

    def test_invalid_address(self, bridge, ledger):
        with pytest.raises(InvalidAddress):
            run(bridge.verify("0x1234", "0xdead", SIGN_IN_MESSAGE))
        assert ledger.submissions == []

    def test_confirmation_failure_leaves_state_untouched(self, bridge, ledger, wallet):
        ledger.confirm_error = LedgerTimeout("receipt timeout", {"operation": "waitForReceipt"})
        with pytest.raises(VerificationFailed) as exc:
            _verify(bridge, wallet)

        assert exc.value.details["cause"] == "timeout"
        assert exc.value.details["transactionHash"] == ledger.submissions[0].tx_hash
        assert bridge.pending_for(wallet.address) is None
        assert bridge.store.get(wallet.address.lower()) is None
        assert run(bridge.status(wallet.address)).verified is False

    def test_submission_failure_clears_pending(self, bridge, ledger, wallet):
        ledger.submit_error = LedgerCallFailed("reverted", {"reason": "reverted"})
        with pytest.raises(VerificationFailed) as exc:
            _verify(bridge, wallet)
        assert exc.value.details["cause"] == "call_failed"
        assert "transactionHash" not in exc.value.details
        assert bridge.pending_for(wallet.address) is None

    def test_resubmit_after_failure(self, bridge, ledger, wallet):
        ledger.confirm_error = LedgerTimeout("receipt timeout")
        with pytest.raises(VerificationFailed):
            _verify(bridge, wallet)

        ledger.confirm_error = None
        result = _verify(bridge, wallet)
        assert len(ledger.submissions) == 2
        assert result.tx_hash == ledger.submissions[1].tx_hash


# ────────────────────────────────────────────────────────────
# revoke
# ────────────────────────────────────────────────────────────

class TestRevoke:
    def test_revoke_flips_status(self, bridge, wallet):
        verified = _verify(bridge, wallet)
        result = run(bridge.revoke(wallet.address, sign(wallet), SIGN_IN_MESSAGE))
        assert result.tx_hash

        status = run(bridge.status(wallet.address))
        assert status.verified is False
        # Binding retained
        assert status.pseudonym_id == verified.pseudonym_id

        record = bridge.store.get(wallet.address.lower())
        assert [t.kind.value for t in record.history] == ["verify", "revoke"]

    def test_revoke_requires_proof_by_default(self, bridge, ledger, wallet):
        _verify(bridge, wallet)
        with pytest.raises(RevokeNotAuthorized):
            run(bridge.revoke(wallet.address))
        assert len(ledger.submissions) == 1

    def test_revoke_rejects_foreign_signature(self, bridge, ledger, wallet, other_wallet):
        _verify(bridge, wallet)
        with pytest.raises(InvalidSignature):
            run(bridge.revoke(wallet.address, sign(other_wallet), SIGN_IN_MESSAGE))
        assert run(bridge.status(wallet.address)).verified is True

    def test_admin_revoke_skips_signature(self, bridge, wallet):
        _verify(bridge, wallet)
        run(bridge.revoke(wallet.address, admin=True))
        assert run(bridge.status(wallet.address)).verified is False

    def test_open_revoke_mode(self, ledger, wallet):
        bridge = VerificationStateBridge(ledger, revoke_requires_signature=False)
        _verify(bridge, wallet)
        run(bridge.revoke(wallet.address))
        assert run(bridge.status(wallet.address)).verified is False

    def test_revoke_unknown_account_creates_no_record(self, bridge, ledger, wallet):
        run(bridge.revoke(wallet.address, admin=True))
        assert len(ledger.submissions) == 1
        assert bridge.store.get(wallet.address.lower()) is None

    def test_failed_revoke_keeps_verified(self, bridge, ledger, wallet):
        _verify(bridge, wallet)
        ledger.confirm_error = LedgerCallFailed("reverted", {"reason": "reverted"})
        with pytest.raises(VerificationFailed):
            run(bridge.revoke(wallet.address, admin=True))
        record = bridge.store.get(wallet.address.lower())
        assert record.verified is True
        assert run(bridge.status(wallet.address)).verified is True

    def test_unprefixed_revoke_updates_the_same_record(self, bridge, ledger, wallet):
        verified = _verify(bridge, wallet)
        result = run(bridge.revoke(wallet.address[2:], admin=True))
        assert result.account == wallet.address.lower()
        assert ledger.submissions[-1].accounts == (wallet.address.lower(),)

        record = bridge.store.get(wallet.address.lower())
        assert record.verified is False
        assert record.pseudonym_id == verified.pseudonym_id
        assert len(bridge.store) == 1


# ────────────────────────────────────────────────────────────
# concurrency
# ────────────────────────────────────────────────────────────

class TestConcurrency:
    def test_second_verify_sees_already_pending(self, bridge, ledger, wallet):
        signature = sign(wallet)

        async def scenario():
            ledger.hold = asyncio.Event()
            ledger.entered = asyncio.Event()
            first = asyncio.create_task(bridge.verify(wallet.address, signature, SIGN_IN_MESSAGE))
            await ledger.entered.wait()

            assert bridge.pending_for(wallet.address).kind.value == "verify"
            assert (await bridge.status(wallet.address)).pending == "verify"
            with pytest.raises(AlreadyPending):
                await bridge.verify(wallet.address, signature, SIGN_IN_MESSAGE)
            with pytest.raises(AlreadyPending):
                await bridge.revoke(wallet.address, admin=True)

            ledger.hold.set()
            return await first

        result = run(scenario())
        assert len(ledger.submissions) == 1
        assert result.tx_hash == ledger.submissions[0].tx_hash
        assert bridge.pending_for(wallet.address) is None

    def test_every_spelling_shares_one_pending_slot(self, bridge, ledger, wallet):
        signature = sign(wallet)
        spellings = (
            wallet.address[2:],
            wallet.address[2:].lower(),
            wallet.address.lower(),
            "0x" + wallet.address[2:].upper(),
        )

        async def scenario():
            ledger.hold = asyncio.Event()
            ledger.entered = asyncio.Event()
            first = asyncio.create_task(bridge.verify(wallet.address, signature, SIGN_IN_MESSAGE))
            await ledger.entered.wait()

            for spelling in spellings:
                assert bridge.pending_for(spelling) is not None
                with pytest.raises(AlreadyPending):
                    await bridge.revoke(spelling, admin=True)
                with pytest.raises(AlreadyPending):
                    await bridge.verify(spelling, signature, SIGN_IN_MESSAGE)

            ledger.hold.set()
            return await first

        result = run(scenario())
        assert len(ledger.submissions) == 1
        assert result.account == wallet.address.lower()
        assert len(bridge.store) == 1

    def test_other_accounts_are_not_blocked(self, bridge, ledger, wallet, other_wallet):
        async def scenario():
            ledger.entered = asyncio.Event()
            ledger.hold = asyncio.Event()
            first = asyncio.create_task(
                bridge.verify(wallet.address, sign(wallet), SIGN_IN_MESSAGE)
            )
            await ledger.entered.wait()
            second = asyncio.create_task(
                bridge.verify(other_wallet.address, sign(other_wallet), SIGN_IN_MESSAGE)
            )
            await asyncio.sleep(0)
            assert bridge.pending_for(other_wallet.address) is not None
            ledger.hold.set()
            return await asyncio.gather(first, second)

        a, b = run(scenario())
        assert a.pseudonym_id != b.pseudonym_id
        assert len(ledger.submissions) == 2

    def test_cancellation_releases_pending(self, bridge, ledger, wallet):
        async def scenario():
            ledger.entered = asyncio.Event()
            ledger.hold = asyncio.Event()
            task = asyncio.create_task(
                bridge.verify(wallet.address, sign(wallet), SIGN_IN_MESSAGE)
            )
            await ledger.entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        run(scenario())
        assert bridge.pending_for(wallet.address) is None
        assert bridge.store.get(wallet.address.lower()) is None
