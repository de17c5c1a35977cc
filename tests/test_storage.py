"""Encrypted local key storage."""

import getpass

import pytest

from client.cli_client import main, open_key_storage
from client.storage import EncryptedStorage
from crypto import KeyStore


def test_keys_survive_reopen(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    assert storage.unlock("correct horse")
    storage.save_keys("identity:alice", {"private": "ab" * 64})
    storage.close()

    reopened = EncryptedStorage("alice", str(tmp_path))
    assert reopened.unlock("correct horse")
    assert reopened.load_keys("identity:alice") == {"private": "ab" * 64}
    assert reopened.load_keys("identity:bob") is None
    reopened.close()


def test_wrong_password_is_refused(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    storage.unlock("correct horse")
    storage.save_keys("identity:alice", {"private": "ab" * 64})
    storage.close()

    intruder = EncryptedStorage("alice", str(tmp_path))
    assert not intruder.unlock("battery staple")
    assert intruder.load_keys("identity:alice") is None
    with pytest.raises(ValueError):
        intruder.save_keys("identity:alice", {"private": "00"})


def test_nothing_stored_in_clear(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    storage.unlock("correct horse")
    storage.save_keys("identity:alice", {"private": "cafe" * 32})
    storage.close()

    assert b"cafe" not in (tmp_path / "alice.db").read_bytes()


def test_delete_keys(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    storage.unlock("correct horse")
    storage.save_keys("identity:alice", {"private": "ab" * 64})
    storage.delete_keys("identity:alice")
    assert storage.load_keys("identity:alice") is None
    storage.close()


@pytest.mark.asyncio
async def test_identity_key_persists_across_clients(tmp_path, make_peer, app):
    storage = EncryptedStorage("alice", str(tmp_path / "keys"))
    storage.unlock("correct horse")

    first = await make_peer("alice", keystore=KeyStore(storage)).start()
    fingerprint = first.orchestrator.identity.fingerprint
    await first.orchestrator.logout()

    second = await make_peer("alice", keystore=KeyStore(storage)).start()
    assert second.orchestrator.identity.fingerprint == fingerprint
    assert (await app.state.db.get_identity_key("alice")).version == 1
    storage.close()


def test_empty_passphrase_is_refused(tmp_path):
    storage = EncryptedStorage("alice", str(tmp_path))
    with pytest.raises(ValueError):
        storage.unlock("")
    assert not (tmp_path / "alice.salt").exists()


def test_cli_storage_needs_its_own_passphrase(tmp_path, capsys):
    assert open_key_storage("alice", str(tmp_path), "") is None
    assert "passphrase is required" in capsys.readouterr().out
    assert not (tmp_path / "alice.salt").exists()

    storage = open_key_storage("alice", str(tmp_path), "correct horse")
    storage.save_keys("identity:alice", {"private": "ab" * 64})
    storage.close()

    # Knowing the (public) username is not enough
    assert open_key_storage("alice", str(tmp_path), "alice") is None


@pytest.mark.asyncio
async def test_cli_exits_without_passphrase(tmp_path, monkeypatch):
    # Open-mode login: blank account password, blank storage passphrase
    monkeypatch.setattr(getpass, "getpass", lambda prompt="": "")
    assert await main(["--user", "alice", "--storage-dir", str(tmp_path)]) == 1
    assert list(tmp_path.iterdir()) == []
