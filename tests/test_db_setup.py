import pytest

from conftest import seed_primary, seed_secondary, set_created_at
from db_models import LinkPrecedence
from db_setup import ContactStore, get_db_connection, init_db, utcnow
from errors import StoreError


def test_init_db_is_repeatable(db_path):
    init_db(db_path)

    conn = get_db_connection(db_path)
    try:
        assert ContactStore(conn).all_contacts() == []
    finally:
        conn.close()


def test_contact_requires_email_or_phone(store):
    with pytest.raises(StoreError):
        store.create_contact(None, None)


def test_secondary_requires_linked_id(store):
    with pytest.raises(StoreError):
        store.create_contact("a@hillvalley.edu", None, None, LinkPrecedence.SECONDARY)


def test_primary_cannot_carry_linked_id(store):
    seed_primary(store, "a@hillvalley.edu")

    with pytest.raises(StoreError):
        store.create_contact("b@hillvalley.edu", None, 1, LinkPrecedence.PRIMARY)


def test_secondary_must_link_to_existing_contact(store):
    with pytest.raises(StoreError):
        seed_secondary(store, 99, "a@hillvalley.edu")


def test_create_contact_sets_timestamps(store):
    contact = seed_primary(store, "a@hillvalley.edu", "1")

    assert contact.id == 1
    assert contact.createdAt == contact.updatedAt
    assert contact.deletedAt is None


def test_find_matching_without_values_returns_nothing(store):
    seed_primary(store, "a@hillvalley.edu", "1")

    assert store.find_matching(None, None) == []


def test_find_matching_uses_only_submitted_fields(store):
    seed_primary(store, "a@hillvalley.edu", None)
    seed_primary(store, None, "1")

    assert [c.id for c in store.find_matching("a@hillvalley.edu", None)] == [1]
    assert [c.id for c in store.find_matching(None, "1")] == [2]
    assert [c.id for c in store.find_matching("a@hillvalley.edu", "1")] == [1, 2]


def test_find_matching_orders_by_creation_time(store):
    seed_primary(store, "a@hillvalley.edu", "1")
    seed_primary(store, "b@hillvalley.edu", "1")
    set_created_at(store, 2, "2000-01-01T00:00:00.000000+00:00")

    assert [c.id for c in store.find_matching(None, "1")] == [2, 1]


def test_find_matching_skips_soft_deleted(store):
    seed_primary(store, "a@hillvalley.edu", "1")
    store.update_contact(1, deletedAt=utcnow())

    assert store.find_matching("a@hillvalley.edu", "1") == []


def test_find_by_linked_id_filters_deleted_unless_asked(store):
    seed_primary(store, "a@hillvalley.edu")
    seed_secondary(store, 1, "b@hillvalley.edu")
    seed_secondary(store, 1, "c@hillvalley.edu")
    store.update_contact(3, deletedAt=utcnow())

    assert [c.id for c in store.find_by_linked_id(1)] == [2]
    assert [c.id for c in store.find_by_linked_id(1, include_deleted=True)] == [2, 3]


def test_find_cluster_returns_primary_and_secondaries(store):
    seed_primary(store, "a@hillvalley.edu")
    seed_primary(store, "other@hillvalley.edu")
    seed_secondary(store, 1, "b@hillvalley.edu")

    assert [c.id for c in store.find_cluster(1)] == [1, 3]


def test_update_contact_bumps_updated_at(store):
    seed_primary(store, "a@hillvalley.edu")
    seed_primary(store, "b@hillvalley.edu")
    before = store.get_contact(2)

    after = store.update_contact(2, linkPrecedence=LinkPrecedence.SECONDARY, linkedId=1)

    assert after.linkPrecedence == LinkPrecedence.SECONDARY
    assert after.linkedId == 1
    assert after.createdAt == before.createdAt
    assert after.updatedAt >= before.updatedAt


def test_update_contact_rejects_immutable_columns(store):
    seed_primary(store, "a@hillvalley.edu")

    with pytest.raises(ValueError):
        store.update_contact(1, email="b@hillvalley.edu")


def test_update_missing_contact_fails(store):
    with pytest.raises(StoreError):
        store.update_contact(5, deletedAt=utcnow())


def test_transaction_commits_on_success(store, db_path):
    with store.transaction():
        seed_primary(store, "a@hillvalley.edu")

    other = get_db_connection(db_path)
    try:
        assert len(ContactStore(other).all_contacts()) == 1
    finally:
        other.close()


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            seed_primary(store, "a@hillvalley.edu")
            raise RuntimeError("boom")

    assert store.all_contacts() == []
    assert not store.connection.in_transaction


def test_transaction_waits_out_then_fails_on_held_lock(store, db_path):
    contender = ContactStore(get_db_connection(db_path, timeout=0.05))
    try:
        with store.transaction():
            with pytest.raises(StoreError):
                with contender.transaction():
                    pass
    finally:
        contender.connection.close()


def test_sqlite_errors_are_wrapped(store):
    with pytest.raises(StoreError) as excinfo:
        store._fetch("SELECT * FROM Missing")

    assert excinfo.value.__cause__ is not None
