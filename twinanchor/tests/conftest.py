# twinanchor/tests/conftest.py
import hashlib
import json
import os

import httpx
import pytest
import rlp
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from twinanchor.anchoring import AnchoringService
from twinanchor.crypto import WalletKeyStore
from twinanchor.private_ledger import PrivateLedgerClient, PrivateLedgerConfig
from twinanchor.public_ledger import PublicLedgerClient, PublicLedgerConfig
from twinanchor.storage import InMemoryAnchorDatastore

MASTER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
ORG_KEY = "0x" + "11" * 32
WALLET_SECRET = "test-wallet-encryption-secret"


# ---------------------------------------------------------------------------
# Private ledger: in-process MultiChain node behind httpx.MockTransport
# ---------------------------------------------------------------------------


class FakeMultiChainNode:
    def __init__(self, chain_name="dxerchain"):
        self.chain_name = chain_name
        self.streams = set()
        self.subscribed = set()
        self.items = {}
        self.txs = {}
        self.calls = []
        self.down = False
        self.fail_methods = {}
        self._n = 0

    def _txid(self):
        self._n += 1
        return hashlib.sha256(f"tx-{self._n}".encode()).hexdigest()

    def _error(self, rid, code, message):
        body = {"result": None, "error": {"code": code, "message": message}, "id": rid}
        return httpx.Response(500, json=body)

    def __call__(self, request):
        if self.down:
            return httpx.Response(503, text="node unavailable")
        req = json.loads(request.content)
        method, params, rid = req["method"], req.get("params") or [], req.get("id")
        self.calls.append(method)
        if method in self.fail_methods:
            code, message = self.fail_methods[method]
            return self._error(rid, code, message)
        handler = getattr(self, "rpc_" + method, None)
        if handler is None:
            return self._error(rid, -32601, "Method not found")
        try:
            result = handler(*params)
        except LookupError as e:
            code, message = e.args
            return self._error(rid, code, message)
        return httpx.Response(200, json={"result": result, "error": None, "id": rid})

    def rpc_liststreams(self, name=None, *rest):
        if name is None:
            return [{"name": s} for s in sorted(self.streams)]
        if name not in self.streams:
            raise LookupError(-708, f"Stream with this name not found: {name}")
        return [{"name": name, "subscribed": name in self.subscribed}]

    def rpc_create(self, kind, name, open_):
        if name in self.streams:
            raise LookupError(-705, "Stream, asset or entity with this name already exists")
        self.streams.add(name)
        return self._txid()

    def rpc_subscribe(self, name):
        if name not in self.streams:
            raise LookupError(-708, "Entity not found")
        self.subscribed.add(name)
        return None

    def rpc_publish(self, stream, key, data_hex):
        if stream not in self.subscribed:
            raise LookupError(-703, "Not subscribed to this stream")
        txid = self._txid()
        item = {
            "publishers": ["1FakePublisherAddress"],
            "keys": [key],
            "data": data_hex,
            "confirmations": 1,
            "blocktime": 1700000000 + self._n,
            "txid": txid,
        }
        self.items.setdefault((stream, key), []).append(item)
        self.txs[txid] = item
        return txid

    def rpc_liststreamkeyitems(self, stream, key, verbose=False, count=10):
        return [dict(i) for i in self.items.get((stream, key), [])][-count:]

    def rpc_gettxoutdata(self, txid, vout):
        return self.txs[txid]["data"]

    def rpc_getrawtransaction(self, txid, verbose=0):
        item = self.txs.get(txid)
        if item is None:
            raise LookupError(-5, "No information available about transaction")
        return {
            "txid": txid,
            "confirmations": item["confirmations"],
            "blocktime": item["blocktime"],
            "blockhash": "00" * 32,
        }

    def rpc_getinfo(self):
        return {"chainname": self.chain_name, "blocks": 42}

    def tamper_last_item(self, stream, key, **changes):
        """Rewrite the newest stream item document under `key`."""
        item = self.items[(stream, key)][-1]
        doc = json.loads(bytes.fromhex(item["data"]).decode("utf-8"))
        doc.update(changes)
        item["data"] = json.dumps(doc).encode("utf-8").hex()


# ---------------------------------------------------------------------------
# Public ledger: minimal web3 stand-in that mines one block per transaction
# ---------------------------------------------------------------------------


class FakeEth:
    def __init__(self, chain_id=80002):
        self.chain_id = chain_id
        self.block_number = 1000
        self.gas_price = 30_000_000_000
        self.txs = {}
        self.receipts = {}
        self.blocks = {}
        self.nonces = {}
        self.sent = []
        self.revert_next = False

    def get_transaction_count(self, address, block_identifier="latest"):
        return self.nonces.get(address, 0)

    def estimate_gas(self, tx):
        data = bytes.fromhex(tx["data"][2:])
        return 21000 + 16 * len(data)

    def send_raw_transaction(self, raw):
        raw = bytes(raw)
        nonce, gas_price, gas, to, value, data, v, r, s = rlp.decode(raw)
        sender = Account.recover_transaction(raw)
        tx_hash = bytes(Web3.keccak(raw))
        self.block_number += 1
        self.blocks[self.block_number] = {"number": self.block_number, "timestamp": 1700000000 + self.block_number}
        key = "0x" + tx_hash.hex()
        self.txs[key] = {
            "hash": tx_hash,
            "from": sender,
            "to": Web3.to_checksum_address(to),
            "value": int.from_bytes(value, "big"),
            "input": bytes(data),
            "blockNumber": self.block_number,
        }
        self.receipts[key] = {
            "transactionHash": tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": int.from_bytes(gas, "big"),
            "status": 0 if self.revert_next else 1,
        }
        self.revert_next = False
        self.nonces[sender] = self.nonces.get(sender, 0) + 1
        self.sent.append(key)
        return tx_hash

    def wait_for_transaction_receipt(self, tx_hash, timeout=120):
        return self.receipts["0x" + bytes(tx_hash).hex()]

    def get_transaction(self, tx_hash):
        tx = self.txs.get(str(tx_hash).lower())
        if tx is None:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return tx

    def get_transaction_receipt(self, tx_hash):
        receipt = self.receipts.get(str(tx_hash).lower())
        if receipt is None:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return receipt

    def get_block(self, number):
        return self.blocks[number]

    def get_balance(self, address):
        return 2 * 10**18


class FakeWeb3:
    def __init__(self):
        self.eth = FakeEth()
        self.connected = True

    def is_connected(self):
        return self.connected


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def master_key():
    return MASTER_KEY


@pytest.fixture
def org_key():
    return ORG_KEY


@pytest.fixture
def node():
    return FakeMultiChainNode()


@pytest.fixture
def private_ledger(node):
    client = PrivateLedgerClient(PrivateLedgerConfig(), transport=httpx.MockTransport(node))
    yield client
    client.close()


@pytest.fixture
def fake_web3():
    return FakeWeb3()


@pytest.fixture
def public_ledger(fake_web3):
    return PublicLedgerClient(PublicLedgerConfig(), web3=fake_web3, master_key_provider=lambda: MASTER_KEY)


@pytest.fixture
def datastore():
    store = InMemoryAnchorDatastore()
    yield store
    store.close()


@pytest.fixture
def keystore():
    return WalletKeyStore(secret_provider=lambda: WALLET_SECRET)


@pytest.fixture
def service(datastore, private_ledger, public_ledger, keystore):
    svc = AnchoringService(datastore, private_ledger, public_ledger, keystore, retry_base_s=0.0)
    yield svc
    svc.queue.stop()


@pytest.fixture
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("TWINANCHOR_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
