"""
Integration tests for the Confidential Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from confidential_ledger.api import create_app
from confidential_ledger.codec import NoiseBalanceCodec
from confidential_ledger.commitment import commitment_hash, encrypted_tag, generate_sender_secret
from confidential_ledger.config import LedgerConfig
from confidential_ledger.keys import new_identity
from confidential_ledger.system import LedgerSystem
from confidential_ledger.vault import InMemoryAssetLedger

codec = NoiseBalanceCodec()


def opaque(amount):
    return codec.encode(amount).to_hex()


def headers(identity):
    return {"X-Caller-Identity": identity.hex()}


@pytest.fixture
def system():
    """In-memory ledger system with a funded asset ledger"""
    config = LedgerConfig(storage_backend="memory", minimum_vault_reserve=0, _env_file=None)
    return LedgerSystem(config, asset_ledger=InMemoryAssetLedger())


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


@pytest.fixture
def alice(client, system):
    identity = new_identity()
    system.asset_ledger.fund(identity.hex(), 1000)
    assert client.post("/accounts", headers=headers(identity)).status_code == 201
    return identity


@pytest.fixture
def bob(client, system):
    identity = new_identity()
    system.asset_ledger.fund(identity.hex(), 1000)
    assert client.post("/accounts", headers=headers(identity)).status_code == 201
    return identity


class TestHealthAndAuth:
    """Test health endpoint and caller identification"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_missing_caller(self, client):
        r = client.post("/accounts")
        assert r.status_code == 401

    def test_invalid_caller(self, client):
        r = client.post("/accounts", headers={"X-Caller-Identity": "not-hex"})
        assert r.status_code == 401


class TestAccountFlow:
    """Account creation and reads"""

    def test_create_account(self, client):
        identity = new_identity()
        r = client.post("/accounts", headers=headers(identity))
        assert r.status_code == 201
        data = r.json()
        assert data["owner"] == identity.hex()
        assert data["nonce"] == 0
        assert data["balance"] == 0

    def test_create_account_twice(self, client, alice):
        r = client.post("/accounts", headers=headers(alice))
        assert r.status_code == 409
        assert r.json()["error"] == "account_already_exists"

    def test_balance_visible_only_to_owner(self, client, alice, bob):
        client.post("/deposits", headers=headers(alice), json={"amount": 70, "encrypted_amount": opaque(70)})

        own = client.get(f"/accounts/{alice.hex()}", headers=headers(alice)).json()
        assert own["balance"] == 70

        other = client.get(f"/accounts/{alice.hex()}", headers=headers(bob)).json()
        assert "balance" not in other
        assert other["encrypted_balance"] == opaque(70)

    def test_unknown_account(self, client, alice):
        r = client.get(f"/accounts/{new_identity().hex()}", headers=headers(alice))
        assert r.status_code == 404

    def test_malformed_owner(self, client, alice):
        r = client.get("/accounts/abcd", headers=headers(alice))
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_input"


class TestCustodyFlow:
    """Deposits and withdrawals"""

    def test_deposit_and_withdraw(self, client, system, alice):
        r = client.post("/deposits", headers=headers(alice), json={"amount": 100, "encrypted_amount": opaque(100)})
        assert r.status_code == 200
        assert r.json()["balance"] == 100

        r = client.post("/withdrawals", headers=headers(alice), json={"amount": 30})
        assert r.status_code == 200
        assert r.json()["balance"] == 70
        assert system.vault.balance() == 70

    def test_deposit_mismatch(self, client, alice):
        r = client.post("/deposits", headers=headers(alice), json={"amount": 100, "encrypted_amount": opaque(5)})
        assert r.status_code == 400
        assert r.json()["error"] == "commitment_mismatch"

    def test_deposit_without_assets(self, client, alice):
        r = client.post("/deposits", headers=headers(alice), json={"amount": 5000, "encrypted_amount": opaque(5000)})
        assert r.status_code == 502
        assert r.json()["error"] == "asset_transfer_failed"

    def test_withdraw_insufficient(self, client, alice):
        r = client.post("/withdrawals", headers=headers(alice), json={"amount": 1})
        assert r.status_code == 409
        assert r.json()["error"] == "insufficient_balance"

    def test_bad_encrypted_amount(self, client, alice):
        r = client.post("/deposits", headers=headers(alice), json={"amount": 1, "encrypted_amount": "00ff"})
        assert r.status_code == 422


class TestPrivateTransferFlow:
    """Commitment-bound direct transfers"""

    def _payload(self, sender, recipient, amount=10, nonce=0):
        encrypted_amount = codec.encode(amount)
        return {
            "sender": sender.hex(),
            "recipient": recipient.hex(),
            "encrypted_amount": encrypted_amount.to_hex(),
            "nonce": nonce,
            "commitment_hash": commitment_hash(encrypted_amount, nonce, recipient).hex(),
            "encrypted_tag": encrypted_tag(recipient, generate_sender_secret()).hex()
        }

    def test_private_transfer(self, client, alice, bob):
        payload = self._payload(alice, bob)
        r = client.post("/private-transfers", headers=headers(alice), json=payload)
        assert r.status_code == 200
        data = r.json()
        assert data["commitment_hash"] == payload["commitment_hash"]
        assert data["settled"] is False

        replay = client.post("/private-transfers", headers=headers(alice), json=payload)
        assert replay.status_code == 409
        assert replay.json()["error"] == "invalid_nonce"

    def test_repeated_payment_uses_next_nonce(self, client, alice, bob):
        first = client.post("/private-transfers", headers=headers(alice), json=self._payload(alice, bob))
        second = client.post("/private-transfers", headers=headers(alice), json=self._payload(alice, bob, nonce=1))
        assert first.status_code == 200
        assert second.status_code == 200

        alice_view = client.get(f"/accounts/{alice.hex()}", headers=headers(alice)).json()
        assert alice_view["nonce"] == 2

    def test_wrong_nonce(self, client, alice, bob):
        r = client.post("/private-transfers", headers=headers(alice), json=self._payload(alice, bob, nonce=4))
        assert r.status_code == 409
        assert r.json()["error"] == "invalid_nonce"

    def test_spoofed_sender(self, client, alice, bob):
        r = client.post("/private-transfers", headers=headers(bob), json=self._payload(alice, bob))
        assert r.status_code == 403
        assert r.json()["error"] == "unauthorized"


class TestPendingTransferFlow:
    """Escrow create, list, claim and cancel"""

    def _create(self, client, sender, recipient, amount=40):
        client.post("/deposits", headers=headers(sender), json={"amount": 100, "encrypted_amount": opaque(100)})
        r = client.post("/pending-transfers", headers=headers(sender), json={
            "recipient": recipient.hex(),
            "amount": amount,
            "encrypted_amount": opaque(amount)
        })
        assert r.status_code == 201
        return r.json()

    def _path(self, transfer):
        return f"/pending-transfers/{transfer['sender']}/{transfer['recipient']}/{transfer['nonce']}"

    def test_create_and_claim(self, client, alice, bob):
        transfer = self._create(client, alice, bob)
        assert transfer["nonce"] == 0
        assert transfer["state"] == "created"

        r = client.get(self._path(transfer), headers=headers(bob))
        assert r.status_code == 200
        assert r.json()["amount"] == 40

        inbox = client.get("/pending-transfers", headers=headers(bob), params={"direction": "incoming"}).json()
        assert [t["address"] for t in inbox["transfers"]] == [transfer["address"]]

        r = client.post(self._path(transfer) + "/claim", headers=headers(bob))
        assert r.status_code == 200
        assert r.json()["state"] == "claimed"

        bob_view = client.get(f"/accounts/{bob.hex()}", headers=headers(bob)).json()
        assert bob_view["balance"] == 40

        again = client.post(self._path(transfer) + "/cancel", headers=headers(alice))
        assert again.status_code == 404
        assert again.json()["error"] == "record_not_found"
        assert client.get(self._path(transfer), headers=headers(bob)).status_code == 404

    def test_create_and_cancel(self, client, alice, bob):
        transfer = self._create(client, alice, bob)

        outbox = client.get("/pending-transfers", headers=headers(alice), params={"direction": "outgoing"}).json()
        assert len(outbox["transfers"]) == 1

        r = client.post(self._path(transfer) + "/cancel", headers=headers(alice))
        assert r.status_code == 200
        assert r.json()["state"] == "cancelled"

        alice_view = client.get(f"/accounts/{alice.hex()}", headers=headers(alice)).json()
        assert alice_view["balance"] == 100
        assert alice_view["nonce"] == 1

    def test_claim_by_wrong_party(self, client, alice, bob):
        transfer = self._create(client, alice, bob)
        r = client.post(self._path(transfer) + "/claim", headers=headers(alice))
        assert r.status_code == 403

    def test_insufficient_balance(self, client, alice, bob):
        r = client.post("/pending-transfers", headers=headers(alice), json={
            "recipient": bob.hex(),
            "amount": 150,
            "encrypted_amount": opaque(150)
        })
        assert r.status_code == 409
        assert r.json()["error"] == "insufficient_balance"

    def test_invalid_direction(self, client, alice):
        r = client.get("/pending-transfers", headers=headers(alice), params={"direction": "sideways"})
        assert r.status_code == 400


class TestAuditEndpoints:
    """Audit trail integrity over HTTP"""

    def test_integrity_after_activity(self, client, alice, bob):
        client.post("/deposits", headers=headers(alice), json={"amount": 10, "encrypted_amount": opaque(10)})
        client.post("/withdrawals", headers=headers(bob), json={"amount": 10})

        r = client.get("/audit/integrity")
        assert r.status_code == 200
        data = r.json()
        assert data["valid"] is True
        assert data["total_events"] > 0
