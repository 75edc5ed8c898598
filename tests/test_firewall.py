import json

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from vh_gateway.firewall import BAN_MESSAGE, Firewall


class Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_ban_after_threshold_is_persisted(tmp_path):
    path = tmp_path / "blacklist.json"
    fw = Firewall(blacklist_path=str(path), ban_threshold=3)

    assert fw.add_violation("1.2.3.4", "probe") is False
    assert fw.add_violation("1.2.3.4", "probe") is False
    assert fw.add_violation("1.2.3.4", "probe") is True
    assert fw.is_banned("1.2.3.4")
    assert json.loads(path.read_text(encoding="utf-8")) == ["1.2.3.4"]

    reloaded = Firewall(blacklist_path=str(path), ban_threshold=3)
    assert reloaded.is_banned("1.2.3.4")
    assert not reloaded.is_banned("5.6.7.8")


def test_score_resets_after_quiet_period(tmp_path):
    clock = Clock()
    fw = Firewall(blacklist_path=str(tmp_path / "bl.json"), ban_threshold=2, violation_timeout=600, clock=clock)
    fw.add_violation("9.9.9.9")
    clock.t += 601
    assert fw.add_violation("9.9.9.9") is False
    assert not fw.is_banned("9.9.9.9")
    assert fw.add_violation("9.9.9.9") is True


def test_unban(tmp_path):
    path = tmp_path / "bl.json"
    fw = Firewall(blacklist_path=str(path), ban_threshold=1)
    fw.add_violation("1.1.1.1")
    assert fw.unban("1.1.1.1")
    assert not fw.unban("1.1.1.1")
    assert json.loads(path.read_text(encoding="utf-8")) == []


def test_corrupt_blacklist_starts_empty(tmp_path):
    path = tmp_path / "bl.json"
    path.write_text("{not json", encoding="utf-8")
    assert Firewall(blacklist_path=str(path)).banned == set()


def test_bot_paths():
    assert Firewall.is_bot_path("/wp-admin/setup.php")
    assert Firewall.is_bot_path("/.ENV")
    assert Firewall.is_bot_path("/config")
    assert Firewall.is_bot_path("/config.php")
    assert not Firewall.is_bot_path("/raw/main/loader.lua")


def test_script_named_like_a_trap_is_not_a_violation(tmp_path):
    assert not Firewall.is_bot_path("/raw/main/config.lua")
    assert not Firewall.is_bot_path("/raw/main/.env")
    assert not Firewall.is_bot_path("/configure")

    fw = Firewall(blacklist_path=str(tmp_path / "bl.json"), ban_threshold=1)
    app = _app(fw)

    @app.get("/raw/{repo_id}/{file_name}")
    def raw(repo_id: str, file_name: str):
        return PlainTextResponse("print(1)")

    r = TestClient(app).get("/raw/main/config.lua")
    assert r.status_code == 200
    assert r.text == "print(1)"
    assert fw.banned == set()


def _app(fw: Firewall) -> FastAPI:
    app = FastAPI()
    fw.install(app, lambda request: request.client.host if request.client else None)

    @app.get("/ok")
    def ok():
        return PlainTextResponse("fine")

    @app.get("/deny")
    def deny():
        return PlainTextResponse("-- ACCESS DENIED", status_code=403)

    return app


def test_middleware_counts_rejections_and_blocks(tmp_path):
    fw = Firewall(blacklist_path=str(tmp_path / "bl.json"), ban_threshold=3)
    client = TestClient(_app(fw))

    assert client.get("/ok").status_code == 200
    assert client.get("/deny").status_code == 403
    r = client.get("/.env")
    assert r.status_code == 404
    assert r.text == "Not Found"
    assert client.get("/deny").status_code == 403

    r = client.get("/ok")
    assert r.status_code == 403
    assert r.text == BAN_MESSAGE
    assert "testclient" in fw.banned
