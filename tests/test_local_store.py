import pytest
from sqlalchemy.exc import IntegrityError

from local_store import LocalStore, has_instant_near
from sync_protocol import format_timestamp, parse_timestamp


def test_insert_assigns_surrogate_keys(store):
    first = store.add_tree('T-1', 1.0, 2.0)
    second = store.add_tree('T-2', 3.0, 4.0, note='près du ruisseau')
    assert first.id is not None
    assert second.id > first.id
    assert first.synced is False
    assert first.created_at.endswith('Z')
    assert store.get_tree(second.id).note == 'près du ruisseau'


def test_filter_by_sync_flag(store):
    store.add_tree('T-1', 1.0, 2.0)
    store.add_tree('T-2', 1.0, 2.0, synced=True)
    store.add_collection('T-1', 1, 1.0)
    store.add_collection('T-2', 1, 1.0, synced=True)

    assert [t.tree_id for t in store.list_trees(synced=False)] == ['T-1']
    assert [t.tree_id for t in store.list_trees(synced=True)] == ['T-2']
    assert len(store.list_trees()) == 2
    assert [c.tree_id for c in store.list_collections(synced=False)] == ['T-1']


def test_find_tree_by_external_id(store):
    tree = store.add_tree('T-1', 1.0, 2.0)
    assert store.find_tree('T-1').id == tree.id
    assert store.find_tree('T-404') is None


def test_tree_id_is_unique_locally(store):
    store.add_tree('T-1', 1.0, 2.0)
    with pytest.raises(IntegrityError):
        store.add_tree('T-1', 5.0, 6.0)
    assert len(store.list_trees()) == 1


def test_update_merges_fields(store):
    tree = store.add_tree('T-1', 1.0, 2.0, note='a')
    updated = store.update_tree(tree.id, note='b')
    assert updated.note == 'b'
    reloaded = store.get_tree(tree.id)
    assert (reloaded.lat, reloaded.lng, reloaded.note) == (1.0, 2.0, 'b')


def test_update_rejects_unknown_fields(store):
    tree = store.add_tree('T-1', 1.0, 2.0)
    with pytest.raises(ValueError):
        store.update_tree(tree.id, altitude=12)
    with pytest.raises(ValueError):
        store.update_collection(1, id=99)


def test_update_missing_record_returns_none(store):
    assert store.update_collection(42, cuts=3) is None


def test_delete_by_surrogate_key(store):
    col = store.add_collection('T-1', 1, 1.0)
    assert store.delete_collection(col.id) is True
    assert store.delete_collection(col.id) is False
    assert store.get_collection(col.id) is None
    tree = store.add_tree('T-1', 1.0, 2.0)
    assert store.delete_tree(tree.id) is True
    assert store.list_trees() == []


def test_next_tree_after(store):
    t1 = store.add_tree('T-1', 1.0, 2.0)
    t2 = store.add_tree('T-2', 1.0, 2.0)
    assert store.next_tree_after(t1.id).id == t2.id
    assert store.next_tree_after(t2.id) is None


def test_collections_newest_first(store):
    store.add_collection('T-1', 1, 1.0, timestamp='2024-05-01T06:00:00.000Z')
    store.add_collection('T-1', 2, 2.0, timestamp='2024-05-02T06:00:00.000Z')
    store.add_collection('T-2', 3, 3.0)
    history = store.list_collections(tree_id='T-1', newest_first=True)
    assert [c.cuts for c in history] == [2, 1]


@pytest.mark.parametrize('candidate, expected', [
    ('2024-05-01T06:30:01.500Z', True),
    ('2024-05-01T06:29:58.500Z', True),
    ('2024-05-01T08:30:01+02:00', True),
    ('2024-05-01T06:30:02.000', True),
    ('2024-05-01T06:30:03.000Z', False),
    ('2024-05-01T06:29:57.000Z', False),
])
def test_find_collection_near(store, candidate, expected):
    store.add_collection('T-1', 1, 1.0, timestamp='2024-05-01T06:30:00.000Z')
    found = store.find_collection_near('T-1', candidate)
    assert (found is not None) is expected


def test_find_collection_near_ignores_other_trees(store):
    store.add_collection('T-1', 1, 1.0, timestamp='2024-05-01T06:30:00.000Z')
    assert store.find_collection_near('T-2', '2024-05-01T06:30:00.000Z') is None


def test_find_collection_near_skips_unreadable_local_timestamps(store):
    store.add_collection('T-1', 1, 1.0, timestamp='pas une date')
    assert store.find_collection_near('T-1', '2024-05-01T06:30:00.000Z') is None


def test_transaction_is_all_or_nothing(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as session:
            store.add_tree('T-1', 1.0, 2.0, session=session)
            store.add_collection('T-1', 1, 1.0, session=session)
            raise RuntimeError("interrompu")
    assert store.list_trees() == []
    assert store.list_collections() == []


def test_mark_synced_touches_only_given_keys(store):
    t1 = store.add_tree('T-1', 1.0, 2.0)
    t2 = store.add_tree('T-2', 1.0, 2.0)
    c1 = store.add_collection('T-1', 1, 1.0)
    c2 = store.add_collection('T-1', 1, 1.0)

    assert store.mark_synced([t1.id], [c2.id]) == 2
    assert store.get_tree(t1.id).synced is True
    assert store.get_tree(t2.id).synced is False
    assert store.get_collection(c1.id).synced is False
    assert store.get_collection(c2.id).synced is True


def test_device_id_persists(tmp_path):
    path = str(tmp_path / "device.db")
    store = LocalStore(path)
    device_id = store.device_id
    assert len(device_id) == 32
    assert store.device_id == device_id
    store.close()

    reopened = LocalStore(path)
    assert reopened.device_id == device_id
    reopened.close()


def test_record_sync_result(store):
    state = store.record_sync_result('startup', 'offline')
    assert state.last_sync_status == 'offline'
    assert state.last_success_at is None

    state = store.record_sync_result('online', 'synced')
    assert state.last_success_at is not None
    success_at = state.last_success_at

    state = store.record_sync_result('online', 'failed', 'HTTP 500')
    assert state.last_sync_trigger == 'online'
    assert state.last_sync_error == 'HTTP 500'
    assert state.last_success_at == success_at


def test_store_requires_a_location():
    with pytest.raises(ValueError):
        LocalStore()


def test_content_edit_clears_sync_flag(store):
    tree = store.add_tree('T-1', 1.0, 2.0, synced=True)
    collection = store.add_collection('T-1', 1, 1.0, synced=True)

    assert store.update_tree(tree.id, lat=50.0).synced is False
    assert store.update_collection(collection.id, milk_amount=2.5).synced is False


def test_update_keeps_flag_when_nothing_changes_or_flag_is_explicit(store):
    tree = store.add_tree('T-1', 1.0, 2.0, synced=True)
    assert store.update_tree(tree.id, lat=1.0).synced is True
    assert store.update_tree(tree.id, note='n', synced=True).synced is True
    assert store.update_tree(tree.id, synced=False).synced is False


def test_collection_instants_are_sorted_and_skip_garbage(store):
    store.add_collection('T-1', 1, 1.0, timestamp='2024-05-02T06:00:00.000Z')
    store.add_collection('T-1', 1, 1.0, timestamp='pas une date')
    store.add_collection('T-1', 1, 1.0, timestamp='2024-05-01T08:00:00+02:00')
    store.add_collection('T-2', 1, 1.0, timestamp='2024-04-01T00:00:00Z')

    instants = store.collection_instants('T-1')

    assert [format_timestamp(i) for i in instants] == ['2024-05-01T06:00:00.000Z', '2024-05-02T06:00:00.000Z']
    assert has_instant_near(instants, parse_timestamp('2024-05-01T06:00:02Z'))
    assert not has_instant_near(instants, parse_timestamp('2024-05-01T06:00:02.001Z'))
    assert not has_instant_near([], parse_timestamp('2024-05-01T06:00:00Z'))
