import threading
from datetime import datetime, timedelta, timezone

import pytest

from vh_gateway.entitlements import (
    TRIAL_WIPE_TIMESTAMP,
    CredentialKind,
    EntitlementKind,
    EntitlementStore,
    generate_credential_id,
)
from vh_gateway.errors import (
    VH_E_CREDENTIAL_CONFLICT,
    VH_E_CREDENTIAL_NOT_FOUND,
    VH_E_ENTITLEMENT_EXPIRED,
    VH_E_ENTITLEMENT_NOT_FOUND,
    VH_E_TRIAL_ALREADY_CLAIMED,
    VH_E_TRIAL_EXPIRED,
    VHError,
)
from vh_gateway.mirror import LocalMirror
from vh_gateway.store import StoreState


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def store(tmp_path, clock):
    mirror = LocalMirror(str(tmp_path / "gw.mirror.json"))
    return EntitlementStore(str(tmp_path / "gw.db"), mirror=mirror, clock=clock).open()


def test_store_opens_ready(store):
    assert store.state is StoreState.READY


@pytest.mark.parametrize(
    "kind,pattern",
    [
        (CredentialKind.TRIAL, r"^TRIAL-[A-Z0-9]{4}-[A-Z0-9]{4}$"),
        (CredentialKind.TIME_LIMITED, r"^KEY-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$"),
        (CredentialKind.LIFETIME, r"^LIFE-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$"),
    ],
)
def test_generated_credential_ids(kind, pattern):
    import re

    assert re.match(pattern, generate_credential_id(kind))


def test_lifetime_key_never_expires(store):
    cred = store.issue_credential(CredentialKind.LIFETIME)
    rec = store.redeem(cred.id, "dev-life")
    assert rec.kind is EntitlementKind.LIFETIME
    assert rec.expires_at is None
    assert rec.linked_credential_id == cred.id


def test_time_limited_key_gets_thirty_days(store):
    cred = store.issue_credential(CredentialKind.TIME_LIMITED)
    rec = store.redeem(cred.id, "dev-1")
    assert rec.kind is EntitlementKind.TIME_LIMITED
    assert rec.expires_at == T0 + timedelta(days=30)


def test_redeem_is_idempotent_for_same_device(store):
    cred = store.issue_credential(CredentialKind.TIME_LIMITED, credential_id="KEY-AAAA-BBBB-CCCC")
    first = store.redeem(cred.id, "dev-1")
    second = store.redeem(cred.id, "dev-1")
    assert first == second
    assert store.lookup("dev-1") == first


def test_redeem_rejects_second_device(store):
    cred = store.issue_credential(CredentialKind.LIFETIME)
    store.redeem(cred.id, "dev-1")
    with pytest.raises(VHError) as ei:
        store.redeem(cred.id, "dev-2")
    assert ei.value.code == VH_E_CREDENTIAL_CONFLICT
    assert ei.value.http_status == 409
    assert store.lookup("dev-2") is None


def test_redeem_unknown_key(store):
    with pytest.raises(VHError) as ei:
        store.redeem("KEY-NOPE-NOPE-NOPE", "dev-1")
    assert ei.value.code == VH_E_CREDENTIAL_NOT_FOUND


def test_redeem_expired_binding_reports_expiry(store, clock):
    cred = store.issue_credential(CredentialKind.TIME_LIMITED)
    store.redeem(cred.id, "dev-1")
    clock.advance(days=31)
    with pytest.raises(VHError) as ei:
        store.redeem(cred.id, "dev-1")
    assert ei.value.code == VH_E_ENTITLEMENT_EXPIRED


def test_expired_device_can_renew_with_new_key(store, clock):
    store.redeem(store.issue_credential(CredentialKind.TIME_LIMITED).id, "dev-1")
    clock.advance(days=31)
    fresh = store.issue_credential(CredentialKind.TIME_LIMITED)
    rec = store.redeem(fresh.id, "dev-1")
    assert rec.linked_credential_id == fresh.id
    assert rec.expires_at == clock.now + timedelta(days=30)


def test_active_device_cannot_stack_keys(store):
    store.redeem(store.issue_credential(CredentialKind.LIFETIME).id, "dev-1")
    other = store.issue_credential(CredentialKind.TIME_LIMITED)
    with pytest.raises(VHError) as ei:
        store.redeem(other.id, "dev-1")
    assert ei.value.code == VH_E_CREDENTIAL_CONFLICT
    # The refused key stays redeemable elsewhere.
    assert not store.get_credential(other.id).used


def test_claim_trial_twice_returns_same_credential(store):
    first = store.claim_trial("dev-t")
    second = store.claim_trial("dev-t")
    assert first.linked_credential_id == second.linked_credential_id
    assert first.linked_credential_id.startswith("TRIAL-")
    trials = [c for c in store.list_credentials() if c.kind is CredentialKind.TRIAL]
    assert len(trials) == 1
    assert trials[0].bound_device_id == "dev-t"


def test_claim_trial_after_expiry(store, clock):
    store.claim_trial("dev-t")
    clock.advance(days=30, seconds=1)
    with pytest.raises(VHError) as ei:
        store.claim_trial("dev-t")
    assert ei.value.code == VH_E_TRIAL_EXPIRED


def test_claim_trial_refused_for_lifetime_holder(store):
    store.redeem(store.issue_credential(CredentialKind.LIFETIME).id, "dev-1")
    with pytest.raises(VHError) as ei:
        store.claim_trial("dev-1")
    assert ei.value.code == VH_E_TRIAL_ALREADY_CLAIMED


def test_revoke_then_claim_trial(store):
    store.claim_trial("dev-t")
    rec = store.revoke("dev-t")
    assert rec.revoked
    assert store.lookup("dev-t").kind is EntitlementKind.REVOKED
    with pytest.raises(VHError) as ei:
        store.claim_trial("dev-t")
    assert ei.value.code == VH_E_TRIAL_ALREADY_CLAIMED


def test_revoke_unknown_device(store):
    with pytest.raises(VHError) as ei:
        store.revoke("nobody")
    assert ei.value.code == VH_E_ENTITLEMENT_NOT_FOUND


def test_expire_trials_only_touches_trials(store):
    store.claim_trial("dev-t")
    store.redeem(store.issue_credential(CredentialKind.LIFETIME).id, "dev-l")

    assert store.expire_trials() == 1
    assert store.lookup("dev-t").expires_at == TRIAL_WIPE_TIMESTAMP
    assert store.lookup("dev-l").expires_at is None


def test_writes_refresh_mirror(tmp_path, store):
    store.claim_trial("dev-t")
    mirror = LocalMirror(str(tmp_path / "gw.mirror.json"))
    assert "dev-t" in mirror.collection("entitlements")
    assert len(mirror.collection("credentials")) == 1


def test_concurrent_redeem_has_exactly_one_winner(tmp_path, clock):
    db = str(tmp_path / "race.db")
    setup = EntitlementStore(db, clock=clock).open()
    cred = setup.issue_credential(CredentialKind.LIFETIME)

    # Separate handles: only the database transaction serializes them.
    stores = [EntitlementStore(db, clock=clock).open() for _ in range(6)]
    barrier = threading.Barrier(len(stores))
    results = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        barrier.wait()
        try:
            stores[i].redeem(cred.id, f"dev-{i}")
            outcome = "won"
        except VHError as e:
            outcome = e.code
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(stores))]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert results.count("won") == 1
    assert results.count(VH_E_CREDENTIAL_CONFLICT) == len(stores) - 1
    assert setup.get_credential(cred.id).used
