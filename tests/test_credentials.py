import pytest

from taskkeeper.service.credentials import PASSWORD_ALGO, CredentialStore
from taskkeeper.storage.errors import ConstraintViolation
from taskkeeper.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(store):
    return CredentialStore(store)


def test_hash_is_one_way_and_salted(credentials):
    first, algo = credentials.hash("Red12345!")
    second, _ = credentials.hash("Red12345!")

    assert algo == PASSWORD_ALGO
    assert first != "Red12345!"
    assert first.startswith("$argon2id$")
    assert first != second


def test_verify_matches_only_the_original(credentials):
    digest, algo = credentials.hash("Red12345!")

    assert credentials.verify("Red12345!", digest, algo)
    assert not credentials.verify("red12345!", digest, algo)


def test_verify_fails_closed_on_garbage(credentials):
    assert not credentials.verify("Red12345!", "not-a-digest", PASSWORD_ALGO)
    digest, _ = credentials.hash("Red12345!")
    assert not credentials.verify("Red12345!", digest, "bcrypt")


def test_set_and_check_password(store, credentials):
    user = store.create_user("Andrew", "andrew@example.com")
    credentials.set_password(user.id, "MyPass777!")

    password_hash, _ = store.get_password_record(user.id)
    assert password_hash != "MyPass777!"
    assert credentials.check_password(user.id, "MyPass777!")
    assert not credentials.check_password(user.id, "MyPass778!")


def test_check_password_without_record(store, credentials):
    user = store.create_user("Andrew", "andrew@example.com")

    assert not credentials.check_password(user.id, "MyPass777!")


def test_set_password_for_missing_user(credentials):
    with pytest.raises(ConstraintViolation):
        credentials.set_password("ghost", "MyPass777!")
