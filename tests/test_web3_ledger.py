"""
Tests for Web3Ledger with a stub AsyncWeb3.

Tests cover:
- Pre-flight reverts mapped to specific exceptions, nothing sent
- Local signing and raw submission, receipt status handling
- Node failures as transient errors
- Conversion of logs, transactions and metadata
- Submission surviving cancellation of the caller
"""
import asyncio

import pytest
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from legacy_vault.exceptions import LedgerError, LedgerUnavailable, NotOwner
from legacy_vault.ledger.abi import decode_event, encode_event, hash_string
from legacy_vault.ledger.web3_ledger import Web3Ledger

CONTRACT = "0x" + "0b" * 20
HEIR = "0x" + "bb" * 20
TX_HASH = bytes.fromhex("ab" * 32)


class StubFunction:
    def __init__(self, contract, name, args):
        self._contract = contract
        self.name = name
        self.args = args

    async def call(self, tx):
        self._contract.calls.append((self.name, self.args, tx))
        result = self._contract.results.get(self.name)
        if isinstance(result, BaseException):
            raise result
        return result

    async def build_transaction(self, tx):
        built = {
            "to": AsyncWeb3.to_checksum_address(CONTRACT),
            "value": 0,
            "gas": 100_000,
            "gasPrice": 10 ** 9,
            "nonce": tx["nonce"],
            "chainId": 11155111,
            "data": "0x",
            "from": tx["from"],
        }
        self._contract.built.append(dict(built))
        return built


class StubFunctions:
    def __init__(self, contract):
        self._contract = contract

    def __getattr__(self, name):
        return lambda *args: StubFunction(self._contract, name, args)


class StubContract:
    """Contract binding that replays canned call results."""

    def __init__(self):
        self.results = {}
        self.calls = []
        self.built = []
        self.functions = StubFunctions(self)


class StubEth:
    """Records node requests; ``failures`` maps a method to an exception."""

    def __init__(self):
        self.contract_binding = StubContract()
        self.failures = {}
        self.sent = []
        self.receipt = {"status": 1, "blockNumber": 9}
        self.receipt_gate = None
        self.receipts_returned = 0
        self.log_filters = []
        self.logs = []
        self.transactions = {}

    def _fail(self, method):
        error = self.failures.get(method)
        if error is not None:
            raise error

    def contract(self, address, abi):
        self.contract_binding.address = address
        return self.contract_binding

    async def get_transaction_count(self, sender, block):
        self._fail("get_transaction_count")
        return 7

    async def send_raw_transaction(self, raw):
        self._fail("send_raw_transaction")
        self.sent.append(raw)
        return TX_HASH

    async def wait_for_transaction_receipt(self, tx_hash, timeout):
        self._fail("wait_for_transaction_receipt")
        if self.receipt_gate is not None:
            await self.receipt_gate.wait()
        self.receipts_returned += 1
        return self.receipt

    async def get_block(self, block):
        self._fail("get_block")
        return {"timestamp": 1_700_000_000 if block == "latest" else 1_600_000_000 + block}

    async def get_block_number(self):
        self._fail("get_block_number")
        return 55

    async def get_logs(self, log_filter):
        self._fail("get_logs")
        self.log_filters.append(log_filter)
        return self.logs

    async def get_transaction(self, tx_hash):
        self._fail("get_transaction")
        if tx_hash not in self.transactions:
            raise TransactionNotFound(f"Transaction with hash {tx_hash} not found")
        return self.transactions[tx_hash]


class StubWeb3:
    def __init__(self):
        self.eth = StubEth()


@pytest.fixture
def w3():
    return StubWeb3()


@pytest.fixture
def web3_ledger(w3):
    return Web3Ledger(w3, CONTRACT)


class TestTransactions:
    """Tests for pre-flight, signing and submission."""

    def test_binds_checksum_address(self, w3, web3_ledger):
        """Test that the contract is bound with a checksum address."""
        assert w3.eth.contract_binding.address == AsyncWeb3.to_checksum_address(CONTRACT)
        assert web3_ledger.contract_address == CONTRACT

    @pytest.mark.asyncio
    async def test_revert_maps_to_error_and_sends_nothing(self, w3, web3_ledger, owner):
        """Test that a pre-flight revert surfaces before any transaction."""
        w3.eth.contract_binding.results["grantAccess"] = ContractLogicError(
            "execution reverted: Only owner can call this",
        )
        with pytest.raises(NotOwner):
            await web3_ledger.grant_access(owner, "abc1234", HEIR)
        assert w3.eth.sent == []
        assert w3.eth.contract_binding.built == []

    @pytest.mark.asyncio
    async def test_signed_and_sent(self, w3, web3_ledger, owner):
        """Test that the transaction is signed locally and sent raw."""
        tx_hash = await web3_ledger.grant_access(owner, "abc1234", HEIR)
        assert tx_hash == "0x" + "ab" * 32
        name, args, call_tx = w3.eth.contract_binding.calls[0]
        assert name == "grantAccess"
        assert args == ("abc1234", AsyncWeb3.to_checksum_address(HEIR))
        assert call_tx == {"from": AsyncWeb3.to_checksum_address(owner.address)}
        (built,) = w3.eth.contract_binding.built
        assert built["nonce"] == 7
        expected = owner.account.sign_transaction(built).raw_transaction
        assert w3.eth.sent == [expected]

    @pytest.mark.asyncio
    async def test_failed_receipt(self, w3, web3_ledger, owner):
        """Test that a mined but reverted transaction is a ledger error."""
        w3.eth.receipt = {"status": 0, "blockNumber": 9}
        with pytest.raises(LedgerError) as exc:
            await web3_ledger.revoke_access(owner, "abc1234", HEIR)
        assert not exc.value.retriable
        assert exc.value.details["tx_hash"] == "0x" + "ab" * 32

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_transient(self, w3, web3_ledger, owner):
        """Test that a missing receipt is retriable."""
        w3.eth.failures["wait_for_transaction_receipt"] = TimeExhausted()
        with pytest.raises(LedgerUnavailable):
            await web3_ledger.extend_release_time(owner, "abc1234", 2_000_000_000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["get_transaction_count", "send_raw_transaction"])
    async def test_network_errors_are_transient(self, w3, web3_ledger, owner, method):
        """Test that connection failures while sending are retriable."""
        w3.eth.failures[method] = ConnectionResetError("reset by peer")
        with pytest.raises(LedgerUnavailable) as exc:
            await web3_ledger.grant_access(owner, "abc1234", HEIR)
        assert exc.value.retriable

    @pytest.mark.asyncio
    async def test_submission_survives_cancellation(self, w3, web3_ledger, owner):
        """Test that a sent transaction is still awaited after the caller is cancelled."""
        w3.eth.receipt_gate = asyncio.Event()
        task = asyncio.create_task(web3_ledger.grant_access(owner, "abc1234", HEIR))
        while not w3.eth.sent:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert w3.eth.receipts_returned == 0
        w3.eth.receipt_gate.set()
        for _ in range(10):
            await asyncio.sleep(0)
        assert w3.eth.receipts_returned == 1


class TestReads:
    """Tests for contract reads and node queries."""

    @pytest.mark.asyncio
    async def test_metadata_owner_lowercased(self, w3, web3_ledger):
        """Test the metadata tuple conversion."""
        w3.eth.contract_binding.results["getVaultMetadata"] = (
            AsyncWeb3.to_checksum_address("0x" + "aa" * 20), "bafy", 2_000, 1_000,
        )
        metadata = await web3_ledger.get_vault_metadata("abc1234")
        assert metadata.owner == "0x" + "aa" * 20
        assert metadata.content_pointer == "bafy"
        assert metadata.release_timestamp == 2_000

    @pytest.mark.asyncio
    async def test_encrypted_key_is_hex(self, w3, web3_ledger, owner):
        """Test that caller-sensitive reads are sent from the caller."""
        w3.eth.contract_binding.results["getEncryptedKeyAsOwner"] = b"\x01" * 32
        handle = await web3_ledger.get_encrypted_key_as_owner(owner, "abc1234")
        assert handle == "0x" + "01" * 32
        assert w3.eth.contract_binding.calls[0][2]["from"] == (
            AsyncWeb3.to_checksum_address(owner.address)
        )

    @pytest.mark.asyncio
    async def test_call_network_error(self, w3, web3_ledger):
        """Test that a failing read is transient."""
        w3.eth.contract_binding.results["vaultExists"] = OSError("unreachable")
        with pytest.raises(LedgerUnavailable):
            await web3_ledger.vault_exists("abc1234")

    @pytest.mark.asyncio
    async def test_block_queries(self, w3, web3_ledger):
        """Test head, chain time and block timestamps."""
        assert await web3_ledger.block_number() == 55
        assert await web3_ledger.chain_time() == 1_700_000_000
        assert await web3_ledger.get_block_timestamp(5) == 1_600_000_005

    @pytest.mark.asyncio
    async def test_node_down(self, w3, web3_ledger):
        """Test that node failures are transient."""
        w3.eth.failures["get_block_number"] = asyncio.TimeoutError()
        with pytest.raises(LedgerUnavailable):
            await web3_ledger.block_number()

    @pytest.mark.asyncio
    async def test_get_logs(self, w3, web3_ledger):
        """Test log conversion and the per-vault topic filter."""
        log = encode_event(
            "AccessGranted", {"vaultId": "abc1234", "heir": HEIR},
            block_number=12, tx_hash="0x" + "ab" * 32, log_index=3,
        )
        w3.eth.logs = [{
            "topics": list(log.topics),
            "data": log.data,
            "blockNumber": 12,
            "transactionHash": TX_HASH,
            "logIndex": 3,
            "address": AsyncWeb3.to_checksum_address(CONTRACT),
        }]
        (raw,) = await web3_ledger.get_logs(10, 20, vault_id_hash=hash_string("abc1234"))
        assert raw.address == CONTRACT
        assert raw.tx_hash == "0x" + "ab" * 32
        event = decode_event(raw)
        assert event.name == "AccessGranted"
        assert event.args["heir"] == HEIR
        (log_filter,) = w3.eth.log_filters
        assert log_filter["fromBlock"] == 10
        assert log_filter["toBlock"] == 20
        assert log_filter["topics"][1] == AsyncWeb3.to_hex(hash_string("abc1234"))

    @pytest.mark.asyncio
    async def test_get_logs_unfiltered(self, w3, web3_ledger):
        """Test that without a vault hash only event signatures are filtered."""
        assert await web3_ledger.get_logs(1, 2) == []
        assert len(w3.eth.log_filters[0]["topics"]) == 1

    @pytest.mark.asyncio
    async def test_get_transaction(self, w3, web3_ledger):
        """Test transaction conversion and unknown hashes."""
        w3.eth.transactions["0x01"] = {
            "from": AsyncWeb3.to_checksum_address("0x" + "aa" * 20),
            "input": b"\x12\x34",
            "blockNumber": 4,
        }
        tx = await web3_ledger.get_transaction("0x01")
        assert tx.sender == "0x" + "aa" * 20
        assert tx.input == "0x1234"
        assert tx.block_number == 4
        assert await web3_ledger.get_transaction("0x02") is None
