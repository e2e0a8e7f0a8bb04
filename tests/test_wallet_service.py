import asyncio
import struct

import pytest
from sqlalchemy import select

from predictgate.db.models import ActivityLogTable, UserTable
from predictgate.exceptions import (
    AuthenticationFailure,
    ConfirmationTimeout,
    InsufficientFundsError,
    InvalidAddress,
    InvalidRequestError,
    KeyMismatchError,
    MalformedBundleError,
    NoWalletFound,
    PasswordRequired,
    RateLimitedError,
    TransactionFailedError,
    UserNotFound,
    WalletAlreadyRegistered,
    WalletExportNotAllowed,
)
from predictgate.wallet import WalletKind, encrypt_wallet_for_import
from predictgate.wallet.keypair import Keypair, verify_signature
from predictgate.wallet.spl import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    get_associated_token_address,
)
from predictgate.wallet.transaction import build_transfer

from conftest import BLOCKHASH, SINK_ADDRESS, create_user

PASSWORD = "correct horse battery"
OUTCOME_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"


async def _activity(services, user_id):
    async with services.db.session() as session:
        result = await session.execute(select(ActivityLogTable.action).where(ActivityLogTable.user_id == user_id))
        return list(result.scalars())


@pytest.mark.asyncio
async def test_generate_then_resolve(services, user_id):
    wallet = await services.wallets.generate(user_id)
    assert wallet.kind is WalletKind.GENERATED

    resolved = await services.wallets.resolve(user_id)
    assert resolved.public_key == wallet.public_key
    assert "WALLET_CREATED" in await _activity(services, user_id)


@pytest.mark.asyncio
async def test_generated_key_is_stored_encrypted(services, user_id):
    wallet = await services.wallets.generate(user_id)
    async with services.db.session() as session:
        user = await session.get(UserTable, user_id)
    assert user.encrypted_private_key.startswith("ENC:v1:")
    with Keypair.from_base58(services.cipher.decrypt(user.encrypted_private_key)) as kp:
        assert kp.public_key == wallet.public_key


@pytest.mark.asyncio
async def test_generate_never_overwrites(services, user_id):
    first = await services.wallets.generate(user_id)
    with pytest.raises(WalletAlreadyRegistered):
        await services.wallets.generate(user_id)
    assert (await services.wallets.resolve(user_id)).public_key == first.public_key


@pytest.mark.asyncio
async def test_generate_for_unknown_user(services):
    with pytest.raises(UserNotFound):
        await services.wallets.generate("missing-user")


@pytest.mark.asyncio
async def test_resolve_without_wallet(services, user_id):
    assert await services.wallets.resolve(user_id) is None
    with pytest.raises(NoWalletFound):
        await services.wallets.require_wallet(user_id)


@pytest.mark.asyncio
async def test_import_bundle_stores_without_decrypting(services, user_id, keypair, monkeypatch: pytest.MonkeyPatch):
    import predictgate.wallet.service as service_module

    def fail(*args, **kwargs):
        raise AssertionError("import must not decrypt")

    monkeypatch.setattr(service_module, "decrypt_imported_wallet", fail)
    bundle = encrypt_wallet_for_import(keypair.to_base58(), PASSWORD)
    wallet = await services.wallets.import_bundle(user_id, bundle)
    assert wallet.kind is WalletKind.IMPORTED

    async with services.db.session() as session:
        user = await session.get(UserTable, user_id)
    assert user.imported_wallet_encrypted == bundle.encrypted_key
    assert user.imported_wallet_salt == bundle.salt
    assert user.imported_wallet_iv == bundle.iv
    assert user.imported_wallet_version == "1.0"
    assert user.wallet_imported_at is not None
    assert "WALLET_IMPORTED" in await _activity(services, user_id)


@pytest.mark.asyncio
async def test_import_rejects_malformed_bundle(services, user_id, keypair):
    bundle = encrypt_wallet_for_import(keypair.to_base58(), PASSWORD)
    with pytest.raises(MalformedBundleError):
        await services.wallets.import_bundle(user_id, bundle.model_copy(update={"iv": "00"}))
    assert await services.wallets.resolve(user_id) is None


@pytest.mark.asyncio
async def test_reimport_is_rejected(services, user_id, keypair):
    bundle = encrypt_wallet_for_import(keypair.to_base58(), PASSWORD)
    await services.wallets.import_bundle(user_id, bundle)
    with Keypair.generate() as other:
        second = encrypt_wallet_for_import(other.to_base58(), PASSWORD)
    with pytest.raises(WalletAlreadyRegistered):
        await services.wallets.import_bundle(user_id, second)
    assert (await services.wallets.resolve(user_id)).public_key == keypair.public_key


@pytest.mark.asyncio
async def test_public_key_belongs_to_one_user(services, user_id, keypair):
    bob = await create_user(services, "bob@example.com")
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(WalletAlreadyRegistered):
        await services.wallets.import_bundle(bob, encrypt_wallet_for_import(keypair.to_base58(), "bobs password!"))
    with pytest.raises(WalletAlreadyRegistered):
        await services.wallets.adopt_private_key(bob, keypair.to_base58())
    assert await services.wallets.resolve(bob) is None


@pytest.mark.asyncio
async def test_concurrent_imports_of_same_key(services, keypair):
    users = [await create_user(services, f"user-{i}") for i in range(2)]
    bundles = [encrypt_wallet_for_import(keypair.to_base58(), PASSWORD) for _ in users]
    results = await asyncio.gather(
        *(services.wallets.import_bundle(u, b) for u, b in zip(users, bundles)),
        return_exceptions=True,
    )
    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert all(isinstance(r, WalletAlreadyRegistered) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_user_may_import_own_generated_key(services, user_id):
    generated = await services.wallets.generate(user_id)
    exported = await services.wallets.export_private_key(user_id)
    bundle = encrypt_wallet_for_import(exported["privateKey"], PASSWORD)
    wallet = await services.wallets.import_bundle(user_id, bundle)
    assert wallet.public_key == generated.public_key
    assert wallet.kind is WalletKind.IMPORTED


@pytest.mark.asyncio
async def test_imported_wallet_takes_precedence(services, user_id, keypair):
    await services.wallets.generate(user_id)
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    resolved = await services.wallets.resolve(user_id)
    assert resolved.kind is WalletKind.IMPORTED
    assert resolved.public_key == keypair.public_key

    # signing goes through the imported wallet too
    with pytest.raises(PasswordRequired):
        async with services.wallets.signing_keypair(user_id):
            pass
    async with services.wallets.signing_keypair(user_id, PASSWORD) as kp:
        assert kp.public_key == keypair.public_key


@pytest.mark.asyncio
async def test_signing_keypair_is_wiped_after_use(services, user_id):
    await services.wallets.generate(user_id)
    async with services.wallets.signing_keypair(user_id) as kp:
        buffer = kp.secret_buffer
        assert any(buffer)
    assert kp.is_wiped
    assert buffer == bytearray(64)


@pytest.mark.asyncio
async def test_signing_keypair_is_wiped_when_block_raises(services, user_id, keypair):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(RuntimeError):
        async with services.wallets.signing_keypair(user_id, PASSWORD) as kp:
            buffer = kp.secret_buffer
            raise RuntimeError("signing step blew up")
    assert buffer == bytearray(64)


@pytest.mark.asyncio
async def test_key_is_wiped_when_public_key_check_fails(services, user_id, keypair, monkeypatch: pytest.MonkeyPatch):
    with Keypair.generate() as other:
        forged = encrypt_wallet_for_import(keypair.to_base58(), PASSWORD).model_copy(
            update={"public_key": other.public_key}
        )
    await services.wallets.import_bundle(user_id, forged)

    created = []
    original = Keypair.from_secret_key.__func__

    def recording(cls, secret_key):
        kp = original(cls, secret_key)
        created.append(kp)
        return kp

    monkeypatch.setattr(Keypair, "from_secret_key", classmethod(recording))
    with pytest.raises(KeyMismatchError):
        async with services.wallets.signing_keypair(user_id, PASSWORD):
            pass
    assert len(created) == 1
    assert created[0].is_wiped
    assert created[0].secret_buffer == bytearray(64)


@pytest.mark.asyncio
async def test_wrong_password_for_imported_wallet(services, user_id, keypair):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(AuthenticationFailure):
        async with services.wallets.signing_keypair(user_id, "incorrect horse battery"):
            pass


@pytest.mark.asyncio
async def test_signing_is_serialized_per_user(services, user_id):
    await services.wallets.generate(user_id)
    active = 0
    peak = 0

    async def sign_once():
        nonlocal active, peak
        async with services.wallets.signing_keypair(user_id):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(sign_once() for _ in range(3)))
    assert peak == 1


@pytest.mark.asyncio
async def test_sign_and_submit_generated_wallet(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    tx = build_transfer(wallet.public_key, SINK_ADDRESS, 1000, BLOCKHASH)

    signature = await services.wallets.sign_and_submit(user_id, tx.to_base64())
    (sent,) = ledger.sent
    assert sent.signature == signature
    assert verify_signature(sent.message.account_keys[0], sent.signatures[0], sent.message.raw)
    assert "getSignatureStatuses" in ledger.calls


@pytest.mark.asyncio
async def test_sign_and_submit_imported_wallet_requires_password(services, user_id, keypair, ledger):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    tx = build_transfer(keypair.public_key, SINK_ADDRESS, 1000, BLOCKHASH)
    with pytest.raises(PasswordRequired):
        await services.wallets.sign_and_submit(user_id, tx)
    assert ledger.sent == []

    signature = await services.wallets.sign_and_submit(user_id, tx, PASSWORD)
    assert ledger.sent[0].signature == signature


@pytest.mark.asyncio
async def test_confirmation_timeout_reports_signature(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    ledger.confirmation_status = None
    tx = build_transfer(wallet.public_key, SINK_ADDRESS, 1000, BLOCKHASH)
    with pytest.raises(ConfirmationTimeout) as excinfo:
        await services.wallets.sign_and_submit(user_id, tx)
    assert excinfo.value.signature == ledger.sent[0].signature
    assert excinfo.value.retriable is False


@pytest.mark.asyncio
async def test_rate_limit_while_confirming_is_not_retriable(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    ledger.rate_limited_methods.add("getSignatureStatuses")
    tx = build_transfer(wallet.public_key, SINK_ADDRESS, 1000, BLOCKHASH)
    with pytest.raises(ConfirmationTimeout) as excinfo:
        await services.wallets.sign_and_submit(user_id, tx)
    assert excinfo.value.signature == ledger.sent[0].signature
    assert excinfo.value.retriable is False
    assert isinstance(excinfo.value.__cause__, RateLimitedError)
    assert len(ledger.sent) == 1


@pytest.mark.asyncio
async def test_failed_transaction_is_reported(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    ledger.tx_error = {"InstructionError": [0, "Custom"]}
    tx = build_transfer(wallet.public_key, SINK_ADDRESS, 1000, BLOCKHASH)
    with pytest.raises(TransactionFailedError):
        await services.wallets.sign_and_submit(user_id, tx)


@pytest.mark.asyncio
async def test_send_sol(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    ledger.balances[wallet.public_key] = 2_000_000_000

    result = await services.wallets.send_sol(user_id, SINK_ADDRESS, 0.5)
    assert result.from_address == wallet.public_key
    assert result.explorer_url.endswith(result.tx_signature)
    (sent,) = ledger.sent
    assert sent.signers == [wallet.public_key]


@pytest.mark.asyncio
async def test_send_sol_does_not_truncate_lamports(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    ledger.balances[wallet.public_key] = 2_000_000_000

    await services.wallets.send_sol(user_id, SINK_ADDRESS, 1.001)
    (sent,) = ledger.sent
    assert sent.message.instructions[0].data == struct.pack("<IQ", 2, 1_001_000_000)


@pytest.mark.asyncio
async def test_send_sol_checks_balance_first(services, user_id, ledger):
    wallet = await services.wallets.generate(user_id)
    ledger.balances[wallet.public_key] = 500_000_000
    with pytest.raises(InsufficientFundsError):
        await services.wallets.send_sol(user_id, SINK_ADDRESS, 0.5)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_send_sol_rejects_invalid_recipient(services, user_id):
    await services.wallets.generate(user_id)
    with pytest.raises(InvalidAddress):
        await services.wallets.send_sol(user_id, "nope", 0.1)


@pytest.mark.asyncio
async def test_export_generated_key_is_logged(services, user_id):
    wallet = await services.wallets.generate(user_id)
    exported = await services.wallets.export_private_key(user_id)
    with Keypair.from_base58(exported["privateKey"]) as kp:
        assert kp.public_key == wallet.public_key
    assert "PRIVATE_KEY_EXPORT" in await _activity(services, user_id)


@pytest.mark.asyncio
async def test_export_imported_wallet_is_refused(services, user_id, keypair):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(WalletExportNotAllowed):
        await services.wallets.export_private_key(user_id)


@pytest.mark.asyncio
async def test_adopt_private_key(services, user_id, keypair):
    wallet = await services.wallets.adopt_private_key(user_id, keypair.to_base58())
    assert wallet.public_key == keypair.public_key
    assert wallet.kind is WalletKind.GENERATED
    async with services.wallets.signing_keypair(user_id) as kp:
        assert kp.public_key == keypair.public_key


@pytest.mark.asyncio
async def test_balances_and_holdings(services, user_id, ledger, settings):
    wallet = await services.wallets.generate(user_id)
    ledger.balances[wallet.public_key] = 1_500_000_000
    ledger.add_token_account(wallet.public_key, settings.tokens.usdc, 12_500_000)
    ledger.add_token_account(wallet.public_key, SINK_ADDRESS, 42, decimals=0)

    balances = await services.wallets.get_balances(wallet.public_key)
    assert balances.sol == 1.5
    assert balances.usdc == 12.5

    holdings = await services.wallets.get_token_holdings(wallet.public_key)
    assert {h.mint for h in holdings} == {settings.tokens.usdc, SINK_ADDRESS}

    status = await services.wallets.wallet_status(user_id)
    assert status["status"] == "READY"
    assert status["predictionMarketTokenCount"] == 1


@pytest.mark.asyncio
async def test_wallet_status_needs_funding(services, user_id):
    await services.wallets.generate(user_id)
    status = await services.wallets.wallet_status(user_id)
    assert status["status"] == "NEEDS_FUNDING"


@pytest.mark.asyncio
async def test_balances_reject_invalid_address(services):
    with pytest.raises(InvalidAddress):
        await services.wallets.get_balances("not-a-key")


@pytest.mark.asyncio
async def test_send_token_creates_recipient_account_and_transfers(services, user_id, ledger, keypair):
    wallet = await services.wallets.generate(user_id)
    ledger.account_owners[OUTCOME_MINT] = TOKEN_2022_PROGRAM_ID
    source = get_associated_token_address(wallet.public_key, OUTCOME_MINT, TOKEN_2022_PROGRAM_ID)
    ledger.add_token_account(wallet.public_key, OUTCOME_MINT, 5_000_000, program=TOKEN_2022_PROGRAM_ID, address=source)

    result = await services.wallets.send_token(user_id, keypair.public_key, OUTCOME_MINT, 1.5, 6)
    assert result.mint == OUTCOME_MINT
    assert result.to_address == keypair.public_key

    (sent,) = ledger.sent
    keys = sent.account_keys
    create_ix, transfer_ix = sent.message.instructions
    destination = get_associated_token_address(keypair.public_key, OUTCOME_MINT, TOKEN_2022_PROGRAM_ID)
    assert keys[create_ix.program_id_index] == ASSOCIATED_TOKEN_PROGRAM_ID
    assert create_ix.data == bytes([1])
    assert keys[create_ix.accounts[1]] == destination
    assert keys[transfer_ix.program_id_index] == TOKEN_2022_PROGRAM_ID
    assert transfer_ix.data == struct.pack("<BQB", 12, 1_500_000, 6)
    assert [keys[i] for i in transfer_ix.accounts] == [source, OUTCOME_MINT, destination, wallet.public_key]
    assert sent.signers == [wallet.public_key]


@pytest.mark.asyncio
async def test_send_usdc_uses_token_program(services, user_id, ledger, settings, keypair):
    wallet = await services.wallets.generate(user_id)
    usdc = settings.tokens.usdc
    ledger.account_owners[usdc] = TOKEN_PROGRAM_ID
    source = get_associated_token_address(wallet.public_key, usdc)
    ledger.add_token_account(wallet.public_key, usdc, 10_000_000, address=source)

    result = await services.wallets.send_usdc(user_id, keypair.public_key, 2.5)
    assert result.mint == usdc
    (sent,) = ledger.sent
    transfer_ix = sent.message.instructions[-1]
    assert sent.account_keys[transfer_ix.program_id_index] == TOKEN_PROGRAM_ID
    assert transfer_ix.data == struct.pack("<BQB", 12, 2_500_000, 6)


@pytest.mark.asyncio
async def test_send_token_checks_balance_first(services, user_id, ledger, keypair):
    wallet = await services.wallets.generate(user_id)
    ledger.account_owners[OUTCOME_MINT] = TOKEN_PROGRAM_ID
    source = get_associated_token_address(wallet.public_key, OUTCOME_MINT)
    ledger.add_token_account(wallet.public_key, OUTCOME_MINT, 1_000_000, address=source)

    with pytest.raises(InsufficientFundsError):
        await services.wallets.send_token(user_id, keypair.public_key, OUTCOME_MINT, 2, 6)
    with pytest.raises(InvalidRequestError):
        await services.wallets.send_token(user_id, keypair.public_key, OUTCOME_MINT, 0.5, 9)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_send_token_requires_associated_source_account(services, user_id, ledger, keypair):
    wallet = await services.wallets.generate(user_id)
    ledger.account_owners[OUTCOME_MINT] = TOKEN_PROGRAM_ID
    ledger.add_token_account(wallet.public_key, OUTCOME_MINT, 9_000_000)

    with pytest.raises(InsufficientFundsError, match="Source token account not found"):
        await services.wallets.send_token(user_id, keypair.public_key, OUTCOME_MINT, 1, 6)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_send_token_rejects_non_token_mint(services, user_id, ledger, keypair):
    await services.wallets.generate(user_id)
    with pytest.raises(InvalidRequestError):
        await services.wallets.send_token(user_id, keypair.public_key, OUTCOME_MINT, 1, 6)
    assert "sendTransaction" not in ledger.calls


@pytest.mark.asyncio
async def test_send_token_imported_wallet_requires_password(services, user_id, keypair, ledger):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(PasswordRequired):
        await services.wallets.send_usdc(user_id, SINK_ADDRESS, 1)
    assert ledger.calls == []
