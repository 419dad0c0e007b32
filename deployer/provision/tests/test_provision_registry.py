"""Tests for the provisioning registry file."""

from __future__ import annotations

import json
import stat
import threading

from deployer.provision.registry import ProvisionRecord, ProvisionRegistry


def _record(db: str, password: str | None = "pw") -> ProvisionRecord:
    return ProvisionRecord(database=db, username=f"user_{db}", password=password, host="h", port=5432)


class TestProvisionRegistry:
    def test_empty_registry(self, registry):
        assert registry.load() == {"mysql": {}, "postgres": {}}
        assert registry.get("postgres", "alpha") is None
        assert registry.all() == []

    def test_put_and_get(self, registry):
        registry.put("postgres", "alpha", _record("alpha"))
        got = registry.get("postgres", "alpha")
        assert got.username == "user_alpha"
        assert got.password == "pw"
        assert got.created_at

    def test_file_layout_uses_camel_case_timestamp(self, registry):
        registry.put("mysql", "alpha", _record("alpha"))
        data = json.loads(registry.path.read_text())
        assert set(data) == {"mysql", "postgres"}
        assert "createdAt" in data["mysql"]["alpha"]

    def test_file_is_private(self, registry):
        registry.put("postgres", "alpha", _record("alpha"))
        assert stat.S_IMODE(registry.path.stat().st_mode) == 0o600

    def test_reads_legacy_entries(self, registry):
        registry.path.parent.mkdir(parents=True)
        registry.path.write_text(json.dumps({
            "mysql": {"old": {"database": "old", "username": "user_old", "password": "p",
                              "host": "shared-mysql", "port": 3306, "createdAt": "2023-01-01"}},
        }))
        record = registry.get("mysql", "old")
        assert record.port == 3306
        assert record.created_at == "2023-01-01"
        assert registry.load()["postgres"] == {}

    def test_record_without_password(self, registry):
        registry.put("postgres", "alpha", _record("alpha", password=None))
        assert registry.get("postgres", "alpha").password is None

    def test_remove(self, registry):
        registry.put("postgres", "alpha", _record("alpha"))
        assert registry.remove("postgres", "alpha") is True
        assert registry.remove("postgres", "alpha") is False

    def test_find_across_kinds(self, registry):
        registry.put("postgres", "alpha", _record("alpha"))
        registry.put("mysql", "alpha", _record("alpha"))
        registry.put("mysql", "beta", _record("beta"))
        assert [kind for kind, _ in registry.find("alpha")] == ["mysql", "postgres"]
        assert [(k, p) for k, p, _ in registry.all()] == [
            ("mysql", "alpha"), ("mysql", "beta"), ("postgres", "alpha"),
        ]

    def test_concurrent_writers_keep_every_entry(self, tmp_path):
        path = tmp_path / "registry.json"
        errors = []

        def writer(i: int):
            try:
                ProvisionRegistry(path).put("postgres", f"p{i}", _record(f"p{i}"))
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(ProvisionRegistry(path).load()["postgres"]) == 16
