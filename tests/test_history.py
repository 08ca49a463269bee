import threading
import time
from concurrent.futures import ThreadPoolExecutor

from companion_chat.config import HistoryConfig
from companion_chat.history import LOCK_STRIPES, FileHistoryStore, HistoryStoreProvider
from companion_chat.models import ConversationKey


KEY = ConversationKey(companion_id="luna", user_id="user-1", model_name="meta/meta-llama-3-8b-instruct")


def _store(tmp_path, **overrides) -> FileHistoryStore:
    return FileHistoryStore(HistoryConfig(history_dir=str(tmp_path / "history"), **overrides))


def test_unknown_key_reads_empty(tmp_path):
    assert _store(tmp_path).read_latest_history(KEY) == []


def test_append_round_trip_preserves_order(tmp_path):
    store = _store(tmp_path)
    store.write_to_history("first", KEY)
    store.write_to_history("User: hi\nHello there", KEY)
    store.write_to_history("third", KEY)

    entries = store.read_latest_history(KEY)

    assert entries == ["first", "User: hi\nHello there", "third"]
    assert entries[-1] == "third"


def test_seed_splits_on_delimiter(tmp_path):
    store = _store(tmp_path)
    store.seed_chat_history("Hi, I'm Luna.\n\nI love stars.\n\n", "\n\n", KEY)
    assert store.read_latest_history(KEY) == ["Hi, I'm Luna.", "I love stars."]


def test_seed_is_unconditional(tmp_path):
    store = _store(tmp_path)
    store.write_to_history("existing", KEY)
    store.seed_chat_history("seed", "\n\n", KEY)
    assert store.read_latest_history(KEY) == ["existing", "seed"]


def test_oldest_entries_are_evicted_past_cap(tmp_path):
    store = _store(tmp_path, max_entries=3)
    for i in range(5):
        store.write_to_history(f"entry {i}", KEY)
    assert store.read_latest_history(KEY) == ["entry 2", "entry 3", "entry 4"]


def test_read_returns_every_stored_entry(tmp_path):
    store = _store(tmp_path)
    written = [f"entry {i}" for i in range(45)]
    for entry in written:
        store.write_to_history(entry, KEY)
    assert store.read_latest_history(KEY) == written


def test_blank_seed_still_leaves_history_non_empty(tmp_path):
    store = _store(tmp_path)
    store.seed_chat_history("   ", "\n\n", KEY)
    assert store.read_latest_history(KEY) == ["   "]

    other = ConversationKey("luna", "user-2", KEY.model_name)
    store.seed_chat_history("", "\n\n", other)
    assert store.read_latest_history(other) == [""]


def test_lock_pool_does_not_grow_with_keys(tmp_path):
    store = _store(tmp_path)
    locks = {id(store._lock_for(ConversationKey("luna", f"user-{i}", KEY.model_name))) for i in range(500)}
    assert len(locks) <= LOCK_STRIPES
    assert len(store._locks) == LOCK_STRIPES
    assert store._lock_for(KEY) is store._lock_for(ConversationKey(KEY.companion_id, KEY.user_id, KEY.model_name))


def test_keys_do_not_share_streams(tmp_path):
    store = _store(tmp_path)
    other_user = ConversationKey("luna", "user-2", KEY.model_name)
    other_model = ConversationKey("luna", "user-1", "another-model")
    store.write_to_history("mine", KEY)
    store.write_to_history("theirs", other_user)

    assert store.read_latest_history(KEY) == ["mine"]
    assert store.read_latest_history(other_user) == ["theirs"]
    assert store.read_latest_history(other_model) == []
    # Model names with slashes stay inside the history directory.
    assert store.path_for(KEY).parent == store.root


def test_history_survives_a_new_store_instance(tmp_path):
    _store(tmp_path).write_to_history("durable", KEY)
    assert _store(tmp_path).read_latest_history(KEY) == ["durable"]


def test_concurrent_appends_are_all_kept(tmp_path):
    store = _store(tmp_path)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: store.write_to_history(f"entry {i}", KEY), range(40)))
    assert sorted(store.read_latest_history(KEY)) == sorted(f"entry {i}" for i in range(40))


def test_provider_constructs_once_under_concurrent_first_access(tmp_path):
    constructed = []
    gate = threading.Barrier(8)

    def factory():
        constructed.append(1)
        time.sleep(0.05)
        return _store(tmp_path)

    provider = HistoryStoreProvider(factory)

    def acquire(_):
        gate.wait()
        return provider.get()

    with ThreadPoolExecutor(max_workers=8) as pool:
        stores = list(pool.map(acquire, range(8)))

    assert len(constructed) == 1
    assert all(store is stores[0] for store in stores)
    assert provider.is_initialised


def test_provider_is_lazy(tmp_path):
    provider = HistoryStoreProvider(lambda: _store(tmp_path))
    assert not provider.is_initialised
    assert provider.get() is provider.get()
