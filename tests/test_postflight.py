import pytest

from rudolph.gateway import ProxyRequest
from rudolph.postflight import PostPostflightHandler

MACHINE_ID = "AAAAAAAA-A00A-1234-1234-5864377B4831"


class FakeDestroyer:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def destroy_machine_rules_marked_for_deletion(self, machine_id):
        self.calls.append(machine_id)
        if self.error is not None:
            raise self.error


class FakeUpdater:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def update_postflight_date(self, machine_id):
        self.calls.append(machine_id)
        if self.error is not None:
            raise self.error


def make_request(path_parameters=None):
    return ProxyRequest(
        http_method="POST",
        resource="/eventupload/{machine_id}",
        path_parameters={"machine_id": MACHINE_ID} if path_parameters is None else path_parameters,
        headers={"Content-Type": "application/json"},
    )


def test_invalid_method():
    assert PostPostflightHandler().handles(ProxyRequest(http_method="GET")) is False


def test_handles_postflight_post():
    request = ProxyRequest(http_method="POST", resource="/postflight/{machine_id}")
    assert PostPostflightHandler().handles(request) is True


def test_ok():
    destroyer, updater = FakeDestroyer(), FakeUpdater()
    handler = PostPostflightHandler(rule_destroyer=destroyer, sync_state_updater=updater)
    resp = handler.handle(make_request())
    assert resp.status_code == 200
    assert resp.body == '{"status":"ok"}'
    assert destroyer.calls == [MACHINE_ID]
    assert updater.calls == [MACHINE_ID]


def test_destroyer_error():
    handler = PostPostflightHandler(
        rule_destroyer=FakeDestroyer(error=RuntimeError("Yep an error.")),
        sync_state_updater=FakeUpdater(),
    )
    resp = handler.handle(make_request())
    assert resp.status_code == 500
    assert resp.body == "{}"


def test_updater_error_skips_rule_deletion():
    destroyer = FakeDestroyer()
    handler = PostPostflightHandler(
        rule_destroyer=destroyer,
        sync_state_updater=FakeUpdater(error=RuntimeError("nope")),
    )
    resp = handler.handle(make_request())
    assert resp.status_code == 500
    assert resp.body == "{}"
    assert destroyer.calls == []


def test_missing_machine_id():
    handler = PostPostflightHandler(FakeDestroyer(), FakeUpdater())
    resp = handler.handle(make_request(path_parameters={}))
    assert resp.status_code == 400
    assert resp.body == ""


def test_boot_without_services_raises():
    with pytest.raises(RuntimeError):
        PostPostflightHandler().boot()


def test_boot_with_services_then_handles():
    handler = PostPostflightHandler(FakeDestroyer(), FakeUpdater())
    handler.boot()
    assert handler.handle(make_request()).status_code == 200