"""
Tests for client-local storage and cookies.
"""

from pulse.client.storage import JsonFileStorage, MemoryCookieJar, MemoryStorage


class TestMemoryStorage:
    def test_set_get_remove(self):
        storage = MemoryStorage()
        storage.set("k", "v")
        assert storage.get("k") == "v"

        storage.remove("k")
        storage.remove("k")
        assert storage.get("k") is None


class TestJsonFileStorage:
    def test_values_survive_new_instance(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        JsonFileStorage(path).set("k", "v")

        assert JsonFileStorage(path).get("k") == "v"
        assert not path.with_suffix(".json.tmp").exists()

    def test_missing_or_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        assert JsonFileStorage(path).get("k") is None

        path.write_text("{oops", encoding="utf-8")
        assert JsonFileStorage(path).get("k") is None

    def test_remove(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "state.json")
        storage.set("a", "1")
        storage.set("b", "2")

        storage.remove("a")

        assert storage.get("a") is None
        assert storage.get("b") == "2"


class TestMemoryCookieJar:
    def test_cookie_expires_after_max_age(self):
        now = [100.0]
        jar = MemoryCookieJar(clock=lambda: now[0])
        jar.set("sid", "sess_1", max_age=60)

        now[0] = 159.0
        assert jar.get("sid") == "sess_1"

        now[0] = 160.0
        assert jar.get("sid") is None

    def test_missing_cookie(self):
        assert MemoryCookieJar().get("nope") is None
