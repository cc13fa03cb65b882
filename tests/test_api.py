import pytest

from conftest import ALICE, BOB, CAROL, NFT, transfer_log
from holder_index.abis import DEAD_ADDRESS
from holder_index.api import create_app
from holder_index.config import Settings
from holder_index.service import HolderIndexService

OWNERS = {1: ALICE, 2: ALICE, 10: BOB, 11: CAROL}


class InlineExecutor:
    def submit(self, fn, *args):
        fn(*args)

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def service(collection, reader, store, lock):
    reader.values["totalSupply"] = len(OWNERS)
    reader.handlers["ownerOf"] = lambda token_id: OWNERS[token_id]
    settings = Settings(cache_backend="memory", fast_forward=False)
    return HolderIndexService(settings, reader, store, lock, {"testnft": collection}, executor=InlineExecutor())


@pytest.fixture
def client(service):
    app = create_app(service, Settings())
    app.config["TESTING"] = True
    return app.test_client()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_unknown_collection(client):
    response = client.get("/api/holders/nope")

    assert response.status_code == 404
    assert "nope" in response.get_json()["error"]


def test_first_read_triggers_population(client):
    first = client.get("/api/holders/testnft")

    assert first.status_code == 202
    assert first.get_json()["status"] == "started"

    second = client.get("/api/holders/TestNFT?page=1")
    body = second.get_json()
    assert second.status_code == 200
    assert body["page"] == 1
    assert body["pageSize"] == 2
    assert body["totalPages"] == 2
    assert [h["wallet"] for h in body["holders"]] == [ALICE]
    assert body["holders"][0]["rank"] == 3
    assert body["totalLive"] == 4
    assert body["totalHolders"] == 3
    assert body["block"] == 1000


def test_wallet_filter_and_lookup(client):
    client.post("/api/holders/testnft")

    filtered = client.get(f"/api/holders/testnft?wallet={BOB.upper().replace('0X', '0x')}").get_json()
    assert [h["wallet"] for h in filtered["holders"]] == [BOB]

    holder = client.get(f"/api/holders/testnft/{ALICE}")
    assert holder.status_code == 200
    assert holder.get_json()["tokenIds"] == [1, 2]
    assert holder.get_json()["claimableRewards"] == 2.0

    missing = client.get("/api/holders/testnft/0x" + "d4" * 20)
    assert missing.status_code == 404


def test_post_triggers_and_reports_progress(client):
    response = client.post("/api/holders/testnft", json={"forceUpdate": True})

    assert response.status_code == 200
    assert response.get_json()["status"] == "started"

    progress = client.get("/api/holders/testnft/progress").get_json()
    assert progress["collection"] == "testnft"
    assert progress["step"] == "completed"
    assert progress["progressPercentage"] == 100.0
    assert progress["lastProcessedBlock"] == 1000
    assert progress["totalHolders"] == 3


def test_post_while_running_returns_202(client, lock, store):
    lock.try_acquire("testnft")

    response = client.post("/api/holders/testnft")

    assert response.status_code == 202
    assert response.get_json()["status"] == "in_progress"
    assert store.get("testnft_state") is None


def test_bad_paging_arguments(client):
    assert client.get("/api/holders/testnft?page=x").status_code == 400
    assert client.get("/api/holders/testnft?pageSize=0").status_code == 400


def test_disabled_collection_is_rejected(collection, reader, store, lock):
    disabled = collection.__class__.from_dict("old", {"name": "Old", "address": None, "disabled": True})
    service = HolderIndexService(Settings(), reader, store, lock, {"old": disabled}, executor=InlineExecutor())
    client = create_app(service, Settings()).test_client()

    client.post("/api/holders/old")

    progress = client.get("/api/holders/old/progress").get_json()
    assert progress["step"] == "error"
    assert "disabled" in progress["error"]


TX = "0x" + "ab" * 32


def receipt_log(address, *args):
    log = transfer_log(*args)
    log["address"] = address
    return log


def test_validate_burned_reads_the_receipt(client, reader, store):
    burn = receipt_log(NFT.upper().replace("0X", "0x"), 1200, ALICE, DEAD_ADDRESS, 7)
    # topics as raw bytes, the way a node client hands them back
    burn["topics"] = [bytes.fromhex(t[2:]) for t in burn["topics"]]
    reader.receipts[TX] = {
        "blockNumber": 1200,
        "logs": [
            burn,
            receipt_log(NFT, 1200, ALICE, BOB, 8),
            receipt_log("0x" + "99" * 20, 1200, ALICE, DEAD_ADDRESS, 9),
        ],
    }

    response = client.post("/api/holders/testnft/validate-burned", json={"transactionHash": TX.upper().replace("0X", "0x")})

    assert response.status_code == 200
    assert response.get_json() == {"transactionHash": TX.upper().replace("0X", "0x"), "burnedTokenIds": [7], "blockNumber": 1200}
    assert store.get(f"testnft_burn_validation_{TX}")["burnedTokenIds"] == [7]

    # served from cache once validated
    reader.receipts.clear()
    assert client.post("/api/holders/testnft/validate-burned", json={"transactionHash": TX}).status_code == 200


@pytest.mark.parametrize("body", [{}, {"transactionHash": "0x1234"}, {"transactionHash": 12}])
def test_validate_burned_rejects_bad_hashes(client, body):
    response = client.post("/api/holders/testnft/validate-burned", json=body)

    assert response.status_code == 400
    assert "Invalid transaction hash" in response.get_json()["error"]


def test_validate_burned_unknown_transaction(client):
    response = client.post("/api/holders/testnft/validate-burned", json={"transactionHash": TX})

    assert response.status_code == 404


def test_validate_burned_without_burns(client, reader):
    reader.receipts[TX] = {"blockNumber": 1200, "logs": [receipt_log(NFT, 1200, ALICE, BOB, 8)]}

    response = client.post("/api/holders/testnft/validate-burned", json={"transactionHash": TX})

    assert response.status_code == 400
    assert response.get_json()["error"] == "No burn events found in transaction"


def test_init_populates_enabled_collections(collection, reader, store, lock):
    reader.values["totalSupply"] = len(OWNERS)
    reader.handlers["ownerOf"] = lambda token_id: OWNERS[token_id]
    disabled = collection.__class__.from_dict("old", {"name": "Old", "address": None, "disabled": True})
    service = HolderIndexService(Settings(), reader, store, lock, {"testnft": collection, "old": disabled}, executor=InlineExecutor())
    client = create_app(service, Settings()).test_client()

    response = client.get("/api/init")

    assert response.status_code == 200
    assert response.get_json() == {"message": "Initialization triggered", "collections": {"testnft": "started", "old": "skipped"}}
    assert store.get("testnft_holders")["block"] == 1000
    assert store.get("old_state") is None
