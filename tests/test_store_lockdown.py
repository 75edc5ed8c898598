import sqlite3

import pytest

from vh_gateway.entitlements import CredentialKind, EntitlementStore
from vh_gateway.errors import VH_E_STORE_UNAVAILABLE, VH_E_WRITE_BACK_REFUSED, VHError
from vh_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from vh_gateway.mirror import LocalMirror, guard_write_back
from vh_gateway.repos import Repository, RepositoryStore
from vh_gateway.store import StoreState


def _boom(*args, **kwargs):
    raise sqlite3.OperationalError("database is locked")


@pytest.fixture
def mirror(tmp_path):
    return LocalMirror(str(tmp_path / "gw.mirror.json"))


def test_reads_fall_back_to_mirror_and_writes_fail_closed(tmp_path, monkeypatch, mirror):
    monkeypatch.setenv("VH_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("VH_DB_LOCKDOWN_SECONDS", "60")
    store = EntitlementStore(str(tmp_path / "gw.db"), mirror=mirror).open()
    store.claim_trial("dev-t")

    import vh_gateway.store as store_mod

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    rec = store.lookup("dev-t")
    assert rec is not None and rec.device_id == "dev-t"
    assert store.circuit.is_lockdown_active()

    # Lockdown: the primary is not even attempted, reads still answer.
    assert store.lookup("dev-t") == rec

    with pytest.raises(VHError) as ei:
        store.issue_credential(CredentialKind.LIFETIME)
    assert ei.value.code == VH_E_STORE_UNAVAILABLE
    assert ei.value.http_status == 503

    pending = mirror.pending()
    assert pending[-1]["op"] == "issue_credential"
    assert pending[-1]["payload"]["kind"] == "lifetime"
    assert "ts_utc" in pending[-1]


def test_circuit_trips_on_failure_threshold():
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=2, lockdown_seconds=60))
    breaker.record_failure()
    assert not breaker.is_lockdown_active()
    breaker.record_failure()
    assert breaker.is_lockdown_active()


def test_circuit_trips_on_slow_op():
    breaker = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=100, lockdown_seconds=60))
    breaker.record_latency(250.0)
    assert breaker.is_lockdown_active()


def test_unreachable_primary_at_startup(tmp_path, monkeypatch, mirror):
    seeded = EntitlementStore(str(tmp_path / "gw.db"), mirror=mirror).open()
    seeded.claim_trial("dev-t")

    import vh_gateway.store as store_mod

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)
    store = EntitlementStore(str(tmp_path / "gw.db"), mirror=mirror).open()

    assert store.state is StoreState.UNINITIALIZED
    assert store.lookup("dev-t").device_id == "dev-t"
    with pytest.raises(VHError) as ei:
        store.claim_trial("dev-u")
    assert ei.value.code == VH_E_STORE_UNAVAILABLE
    assert mirror.pending()[-1]["op"] == "claim_trial"


def test_empty_primary_does_not_wipe_mirror(tmp_path, mirror):
    original = EntitlementStore(str(tmp_path / "old.db"), mirror=mirror).open()
    original.claim_trial("dev-t")

    # A fresh (empty) database pointed at the same mirror.
    store = EntitlementStore(str(tmp_path / "new.db"), mirror=mirror).open()
    assert store.state is StoreState.LOADED
    assert "dev-t" in mirror.collection("entitlements")
    assert store.lookup("dev-t").device_id == "dev-t"

    with pytest.raises(VHError) as ei:
        store.issue_credential(CredentialKind.TRIAL)
    assert ei.value.code == VH_E_STORE_UNAVAILABLE


def test_guard_write_back():
    guard_write_back("entitlements", 0, 0)
    guard_write_back("entitlements", 3, 1)
    with pytest.raises(VHError) as ei:
        guard_write_back("entitlements", 3, 0)
    assert ei.value.code == VH_E_WRITE_BACK_REFUSED


def test_mirror_refuses_empty_snapshot_and_keeps_others(mirror):
    mirror.write_snapshot({"repos": {"r1": {"id": "r1"}}, "entitlements": {"d": {"device_id": "d"}}})
    with pytest.raises(VHError):
        mirror.write_snapshot({"repos": {}})
    assert mirror.collection("repos") == {"r1": {"id": "r1"}}

    mirror.write_snapshot({"repos": {"r2": {"id": "r2"}}})
    assert set(mirror.collection("repos")) == {"r2"}
    assert "d" in mirror.collection("entitlements")


def test_pending_journal_tolerates_truncated_tail(mirror):
    mirror.append_pending("redeem", {"device_id": "a"})
    mirror.append_pending("redeem", {"device_id": "b"})
    with open(mirror.journal_path, "a", encoding="utf-8") as f:
        f.write('{"op":"redeem","payl')
    assert [e["payload"]["device_id"] for e in mirror.pending()] == ["a", "b"]


def test_replace_files_refuses_empty_set(tmp_path, mirror):
    repos = RepositoryStore(str(tmp_path / "gw.db"), mirror=mirror).open()
    repos.ensure_repository(Repository(id="main", name="main"))
    repos.put_file("main", "loader.lua", "print(1)")
    with pytest.raises(VHError) as ei:
        repos.replace_files("main", {})
    assert ei.value.code == VH_E_WRITE_BACK_REFUSED
    assert repos.get_file("main", "loader.lua").content == "print(1)"


def test_lockdown_window_expires():
    now = [100.0]
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=30), clock=lambda: now[0])
    breaker.record_failure(sqlite3.OperationalError("disk I/O error"))
    assert breaker.remaining_seconds() == 30.0
    now[0] += 29
    assert breaker.is_lockdown_active()
    now[0] += 2
    assert not breaker.is_lockdown_active()
    breaker.record_failure()
    assert breaker.is_lockdown_active()
    breaker.reset()
    assert not breaker.is_lockdown_active()


def test_breaker_config_from_env(monkeypatch):
    monkeypatch.setenv("VH_DB_FAILURE_THRESHOLD", "0")
    monkeypatch.setenv("VH_DB_LOCKDOWN_SECONDS", "bogus")
    monkeypatch.setenv("VH_DB_CONNECT_TIMEOUT_SECONDS", "0.25")
    cfg = CircuitBreakerConfig.from_env()
    assert cfg.failure_threshold == 1
    assert cfg.lockdown_seconds == 30
    assert cfg.connect_timeout_seconds == 0.25


def test_journaled_writes_replay_after_recovery(tmp_path, monkeypatch, mirror):
    db = str(tmp_path / "gw.db")
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=100))
    repos = RepositoryStore(db, mirror=mirror, circuit=breaker).open()
    repos.put_file("main", "loader.lua", "print('old')")
    store = EntitlementStore(db, mirror=mirror, circuit=breaker).open()

    import vh_gateway.store as store_mod

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)
    with pytest.raises(VHError):
        repos.put_file("main", "loader.lua", "print('new build')")
    with pytest.raises(VHError):
        repos.replace_files("main", {"loader.lua": "print('v3')", "extra.lua": "print(2)"})
    with pytest.raises(VHError):
        store.issue_credential(CredentialKind.LIFETIME)
    with pytest.raises(VHError):
        store.claim_trial("dev-t")
    monkeypatch.undo()

    journal = {e["op"]: e["payload"] for e in mirror.pending()}
    assert journal["put_file"]["content"] == "print('new build')"
    assert journal["issue_credential"]["credential_id"]
    assert journal["claim_trial"]["credential_id"]

    repos.put_file(**journal["put_file"])
    assert repos.get_file("main", "loader.lua").content == "print('new build')"

    replace = journal["replace_files"]
    repos.replace_files(replace["repo_id"], replace["files"])
    assert repos.list_files("main") == ["extra.lua", "loader.lua"]
    assert repos.get_file("main", "loader.lua").content == "print('v3')"

    issued = journal["issue_credential"]
    store.issue_credential(CredentialKind(issued["kind"]), issued["credential_id"])
    assert store.get_credential(issued["credential_id"]).kind is CredentialKind.LIFETIME

    claimed = journal["claim_trial"]
    rec = store.claim_trial(claimed["device_id"], claimed["credential_id"])
    assert rec.linked_credential_id == claimed["credential_id"]
