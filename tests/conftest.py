# tests/conftest.py
"""
Shared fixtures.

Every test gets its own audit log, a fresh content catalog and no sponsor
key unless it asks for one. The ledger is never contacted for real.
"""
import base64
import pytest

from app.core.config import settings
from app.services.content_store import reset_content_store
from app.services.sui_bcs import BcsWriter, GasData, ObjectRef, TransactionData
from app.services.sui_rpc import SponsorResource
from app.x402.coordinator import reset_sponsor_queues
from app.x402.preflight import clear_balance_cache
from app.x402.sponsor import SponsorSigner, reset_sponsor_signer

TEST_PACKAGE_ID = "0x" + "ab" * 32
SPONSOR_SEED_HEX = "11" * 32
REQUESTER_SEED_HEX = "22" * 32
OTHER_REQUESTER_SEED_HEX = "33" * 32
GAS_OBJECT_ID = "0x" + "9a" * 32
GAS_VERSION = 10


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the audit log at a temp dir and reset process-wide state."""
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr(settings, "PACKAGE_ID", "DEPLOY_AND_UPDATE_THIS")
    monkeypatch.setattr(settings, "SPONSOR_PRIVATE_KEY", None)
    monkeypatch.setattr(settings, "X402_RPC_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(settings, "X402_FINALITY_POLL_INTERVAL_SECONDS", 0.01)

    reset_content_store()
    reset_sponsor_queues()
    reset_sponsor_signer()
    clear_balance_cache()
    yield
    reset_content_store()
    reset_sponsor_queues()
    reset_sponsor_signer()
    clear_balance_cache()


@pytest.fixture
def deployed(monkeypatch):
    """Bind the gateway to a deployed package."""
    monkeypatch.setattr(settings, "PACKAGE_ID", TEST_PACKAGE_ID)
    return TEST_PACKAGE_ID


@pytest.fixture
def sponsor_key(monkeypatch):
    """Enable gas sponsorship with a fixed test key."""
    monkeypatch.setattr(settings, "SPONSOR_PRIVATE_KEY", SPONSOR_SEED_HEX)
    reset_sponsor_signer()
    return SponsorSigner.from_secret(SPONSOR_SEED_HEX)


@pytest.fixture
def requester():
    """A requester keypair able to sign purchase transactions."""
    return SponsorSigner.from_secret(REQUESTER_SEED_HEX)


@pytest.fixture
def other_requester():
    return SponsorSigner.from_secret(OTHER_REQUESTER_SEED_HEX)


@pytest.fixture
def sponsor_gas():
    """The sponsor gas coin as the ledger reports it before any purchase."""
    return SponsorResource(
        object_id=GAS_OBJECT_ID, version=GAS_VERSION, digest="GasDigest10", balance=5 * 10 ** 9
    )


def purchase_kind(content_id):
    """ProgrammableTransaction: one purchase_content move call on a pure content id."""
    content_arg = BcsWriter().write_str(content_id).to_bytes()
    writer = BcsWriter().write_uleb128(0)  # ProgrammableTransaction
    writer.write_uleb128(1).write_uleb128(0).write_byte_vector(content_arg)  # inputs: [Pure]
    writer.write_uleb128(1).write_uleb128(0)  # commands: [MoveCall]
    writer.write_address(TEST_PACKAGE_ID).write_str("content_access").write_str("purchase_content")
    writer.write_uleb128(0)  # no type arguments
    writer.write_uleb128(1).write_uleb128(1).write_u16(0)  # arguments: [Input(0)]
    return writer.to_bytes()


@pytest.fixture
def build_request():
    """
    Build a signed purchase request the way a wallet does.

    The gas payment is fixed inside the signed bytes: by default the sponsor
    coin at GAS_VERSION, paid by the sponsor.
    """
    sponsor_address = SponsorSigner.from_secret(SPONSOR_SEED_HEX).address

    def build(signer, content_id="content_1", gas_version=GAS_VERSION,
              gas_object_id=GAS_OBJECT_ID, gas_owner=None):
        data = TransactionData(
            kind=purchase_kind(content_id),
            sender=signer.address,
            gas_data=GasData(
                payment=[ObjectRef(gas_object_id, gas_version, bytes([gas_version % 256]) * 32)],
                owner=gas_owner or sponsor_address,
                price=1000,
                budget=10_000_000,
            ),
        )
        tx_bytes = base64.b64encode(data.to_bytes()).decode("ascii")
        return {
            "transactionBytes": tx_bytes,
            "signature": signer.sign_transaction(tx_bytes),
            "publicKey": base64.b64encode(signer.public_key).decode("ascii"),
        }

    return build


@pytest.fixture
def signed_request(build_request, requester):
    """A sponsored purchase of content_1, signed by the requester."""
    return build_request(requester)


@pytest.fixture
def self_paid_request(build_request, requester):
    """A purchase of content_1 where the requester pays gas from a coin of their own."""
    return build_request(requester, gas_object_id="0x" + "7c" * 32, gas_owner=requester.address)
