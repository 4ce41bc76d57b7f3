import json

import pytest

from rudolph.eventupload import (
    EventForwardingError,
    EventUploadEvent,
    EventUploadRequest,
    ForwardedEventUploadEvent,
    PostEventuploadHandler,
    SigningEntry,
    convert_events,
    parse_request,
    send_to_firehose,
    send_to_kinesis,
    send_to_lambda,
)
from rudolph.gateway import ProxyRequest

MACHINE_ID = "AAAAAAAA-A00A-1234-1234-5864377B4831"

BASIC_BODY = """{"events": [{
    "parent_name": "launchd",
    "ppid": 3472,
    "pid": 24832,
    "file_path": "/Applications/My Application.app/Contents/Library/LoginItems/LauncherApplication.app/Contents/MacOS",
    "quarantine_timestamp": 0,
    "logged_in_users": ["john_doe"],
    "current_sessions": ["john_doe@console", "john_doe@ttys000", "john_doe@ttys001"],
    "executing_user": "john_doe",
    "execution_time": 1619729340.537646,
    "file_sha256": "35de834c7f280df703f57ff75b3486b9a04d73c0df96f9f6968db15fa86b8962",
    "file_name": "LauncherApplication",
    "decision": "ALLOW_UNKNOWN",
    "machine_id": "00000000-1111-2222-3333-444444444444"
}]}"""

SIGNED_BODY = """{"events": [{
    "parent_name": "launchd",
    "ppid": 3472,
    "pid": 24832,
    "file_path": "/Applications/My Application.app/Contents/MacOS",
    "quarantine_timestamp": 0,
    "logged_in_users": ["john_doe"],
    "current_sessions": ["john_doe@console"],
    "executing_user": "john_doe",
    "execution_time": 1619729340.537646,
    "file_sha256": "35de834c7f280df703f57ff75b3486b9a04d73c0df96f9f6968db15fa86b8962",
    "file_name": "LauncherApplication",
    "decision": "ALLOW_UNKNOWN",
    "machine_id": "00000000-1111-2222-3333-444444444444",
    "signing_chain": [
        {"cn": "Developer ID Application: My Application, Inc. (ABCDE12345)",
         "org": "My Application, Inc.", "ou": "ABCDE12345",
         "sha256": "0000000b28b738354c43a11486651ca33266e2b7454477d6b351df09c2e97faf",
         "valid_from": 1492010408, "valid_until": 1649863208},
        {"cn": "Developer ID Certification Authority", "org": "Apple Inc.",
         "ou": "Apple Certification Authority",
         "sha256": "7afc9d01a62f03a2de9637936d4afe68090d2de18d03f29c88cfb0b1ba63587f",
         "valid_from": 1328134335, "valid_until": 1801519935},
        {"cn": "Apple Root CA", "org": "Apple Inc.", "ou": "Apple Certification Authority",
         "sha256": "b0b1730ecbc7ff4505142c49f1295e6eda6bcaed7e2c68c5be91b5a11001f024",
         "valid_from": 1146001236, "valid_until": 2054670036}
    ]
}]}"""


class RecordingClient:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def send(self, machine_id, events):
        self.calls.append((machine_id, events))
        if self.error is not None:
            raise self.error


def make_request(machine_id=MACHINE_ID, content_type="application/json", body=""):
    return ProxyRequest(
        http_method="POST",
        resource="/eventupload/{machine_id}",
        path_parameters={"machine_id": machine_id},
        headers={"Content-Type": content_type},
        body=body,
    )


def test_invalid_method():
    request = ProxyRequest(http_method="GET")
    handler = PostEventuploadHandler()
    assert handler.handles(request) is False
    assert handler.handle(request).status_code == 405


def test_handles_post_eventupload():
    assert PostEventuploadHandler().handles(make_request()) is True


def test_incorrect_type():
    resp = PostEventuploadHandler().handle(make_request(content_type="application/xml"))
    assert resp.status_code == 415
    assert resp.body == '{"error":"Invalid mediatype"}'


def test_invalid_path_parameter():
    resp = PostEventuploadHandler().handle(make_request(machine_id=MACHINE_ID + "1"))
    assert resp.status_code == 400
    assert resp.body == '{"error":"Invalid path parameter"}'


def test_blank_path_parameter():
    resp = PostEventuploadHandler().handle(make_request(machine_id=""))
    assert resp.status_code == 400
    assert resp.body == '{"error":"No path parameter"}'


def test_empty_body():
    resp = PostEventuploadHandler().handle(make_request(body=""))
    assert resp.status_code == 400
    assert resp.body == '{"error":"Invalid request body"}'


def test_invalid_body():
    resp = PostEventuploadHandler().handle(make_request(body="{"))
    assert resp.status_code == 400
    assert resp.body == '{"error":"Invalid request body"}'


def test_wrong_field_type_is_invalid_body():
    resp = PostEventuploadHandler().handle(make_request(body='{"events":[{"pid":"x"}]}'))
    assert resp.status_code == 400


def test_lowercase_content_type_header_accepted():
    request = make_request(body=BASIC_BODY)
    request.headers = {"content-type": "application/json"}
    machine_id, parsed = parse_request(request)
    assert machine_id == MACHINE_ID
    assert len(parsed.events) == 1


def test_parse_request_rejection_carries_response():
    with pytest.raises(ValueError) as info:
        parse_request(make_request(content_type="text/plain"))
    assert info.value.response.status_code == 415


def test_kinesis_internal_server_error():
    client = RecordingClient(error=RuntimeError("A A A A A A A"))
    handler = PostEventuploadHandler(kinesis_client=client)
    resp = handler.handle(make_request(body=BASIC_BODY))
    assert resp.status_code == 500
    assert resp.body == '{"error":"Internal server error"}'


def test_kinesis_ok_with_signing_certificate():
    client = RecordingClient()
    handler = PostEventuploadHandler(kinesis_client=client)
    resp = handler.handle(make_request(body=SIGNED_BODY))

    assert resp.status_code == 200
    assert resp.body == '{"status":"ok"}'
    assert len(client.calls) == 1
    machine_id, items = client.calls[0]
    assert machine_id == MACHINE_ID
    assert len(items) == 1
    first = items[0]
    assert first.event.decision == "ALLOW_UNKNOWN"
    assert first.event.file_sha256 == (
        "35de834c7f280df703f57ff75b3486b9a04d73c0df96f9f6968db15fa86b8962"
    )
    assert first.machine_id == MACHINE_ID
    assert len(first.event.signing_chain) == 3
    assert first.event.signing_chain[0].sha256 == (
        "0000000b28b738354c43a11486651ca33266e2b7454477d6b351df09c2e97faf"
    )


def test_no_destinations_returns_ok():
    resp = PostEventuploadHandler().handle(make_request(body=BASIC_BODY))
    assert resp.status_code == 200
    assert resp.body == '{"status":"ok"}'


def test_firehose_failure_stops_later_destinations():
    firehose = RecordingClient(error=RuntimeError("boom"))
    kinesis = RecordingClient()
    handler = PostEventuploadHandler(firehose_client=firehose, kinesis_client=kinesis)
    resp = handler.handle(make_request(body=BASIC_BODY))
    assert resp.status_code == 500
    assert len(firehose.calls) == 1
    assert kinesis.calls == []


def test_all_destinations_receive_events():
    firehose, kinesis, invoker = RecordingClient(), RecordingClient(), RecordingClient()
    handler = PostEventuploadHandler(firehose, kinesis, invoker)
    resp = handler.handle(make_request(body=BASIC_BODY))
    assert resp.status_code == 200
    assert [len(c.calls) for c in (firehose, kinesis, invoker)] == [1, 1, 1]
    assert invoker.calls[0][1].source == "rudolph-direct"


def test_send_to_firehose_wraps_error():
    with pytest.raises(EventForwardingError):
        send_to_firehose(RecordingClient(error=RuntimeError("x")), MACHINE_ID, [EventUploadEvent()])


def test_send_to_kinesis_wraps_error():
    with pytest.raises(EventForwardingError):
        send_to_kinesis(RecordingClient(error=RuntimeError("x")), MACHINE_ID, [EventUploadEvent()])


def test_send_to_lambda_payload_and_error():
    client = RecordingClient()
    send_to_lambda(client, MACHINE_ID, [EventUploadEvent(decision="BLOCK_BINARY")])
    payload = client.calls[0][1]
    assert payload.source == "rudolph-direct"
    assert payload.items[0].event.decision == "BLOCK_BINARY"

    with pytest.raises(EventForwardingError):
        send_to_lambda(RecordingClient(error=RuntimeError("x")), MACHINE_ID, [])


def test_convert_events_tags_machine_id():
    events = [EventUploadEvent(file_name="a"), EventUploadEvent(file_name="b")]
    forwarded = convert_events(MACHINE_ID, events)
    assert [f.machine_id for f in forwarded] == [MACHINE_ID, MACHINE_ID]
    assert [f.event.file_name for f in forwarded] == ["a", "b"]


def test_forwarded_event_to_dict_omits_empty_bundle_fields():
    event = EventUploadEvent(file_name="ls", process_id=7)
    data = ForwardedEventUploadEvent(machine_id=MACHINE_ID, event=event).to_dict()
    assert list(data)[0] == "machine_id"
    assert data["machine_id"] == MACHINE_ID
    assert data["pid"] == 7
    assert data["logged_in_users"] is None
    assert "file_bundle_id" not in data
    assert "file_bundle_hash_millis" not in data


def test_event_round_trip_with_bundle_fields():
    source = {
        "file_name": "App",
        "file_bundle_id": "com.example.app",
        "file_bundle_binary_count": 4,
        "signing_chain": [{"cn": "Example", "sha256": "ab", "valid_from": 1, "valid_until": 2}],
    }
    event = EventUploadEvent.from_dict(source)
    again = EventUploadEvent.from_dict(json.loads(json.dumps(event.to_dict())))
    assert again == event
    assert again.file_bundle_binary_count == 4
    assert again.signing_chain == [
        SigningEntry(certificate_name="Example", sha256="ab", valid_from=1, valid_until=2)
    ]


def test_request_from_json_without_events():
    assert EventUploadRequest.from_json("{}").events == []


def test_request_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        EventUploadRequest.from_json("null")