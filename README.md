# rudolph

Request handlers for a sync server for Santa sensors, written against an
API Gateway style proxy integration. A sensor sync runs through the stages
`/preflight`, `/eventupload`, `/ruledownload` and `/postflight`; each stage has
a handler, and a `Router` passes every request to the first handler that
claims it.

## Installing

```
pip install .
```

There are no runtime dependencies. Storage and streaming back ends are reached
through objects you pass in; any object with the expected methods will do.

## Modules

- `rudolph.clock`: `rfc3339`, `parse_rfc3339`, `unix_timestamp`,
  `from_unix_timestamp`, `y2k_time`, and the time providers
  `ConcreteTimeProvider`, `FrozenTimeProvider`, `Y2K` and `TimeMachine`
  (whose `travel` moves its clock).
- `rudolph.dynamodb`: `PrimaryKey`, attribute-value conversion
  (`marshal_value`, `marshal_map`, `unmarshal_value`, `unmarshal_map`), the
  request builders `delete_item`, `get_item`, `put_item`, `update_item`,
  `query` and `scan`, and `DynamoDBClient`, which binds a low-level API object
  to a table name and a timeout (5 seconds by default). The API object gets
  each request as a dict in DynamoDB's wire naming plus a `timeout` keyword.
  `update_item` builds a `SET` expression conditioned on the partition key and
  raises `ValueError` when there is nothing to set.
- `rudolph.gateway`: `ProxyRequest`, `ProxyResponse`, `api_response` (compact
  JSON bodies; `None` gives an empty body, exceptions encode as `{}`), the
  `Handler` interface (`handles`, `boot`, `handle`) and `Router`.
- `rudolph.authorizer`: `handle_authorizer_request` allows `GET /health` and
  any `POST` that carries a `machine_id` path parameter, and denies the rest.
  `AuthorizerEnvironment.from_environ` reads `REGION`, `GATEWAY_ID` and
  `ACCOUNT_ID` to build the allowed resource ARN.
- `rudolph.firehose`: `FirehoseClient` sends events in batches of up to 500
  (`event_batches`), one JSON line per record, and retries failed records;
  unrecoverable rejections raise `FirehoseError`.
- `rudolph.kinesis`: `KinesisClient` puts each event as a record partitioned
  by machine id.
- `rudolph.invoker`: `LambdaClient` invokes a function asynchronously with a
  `LambdaEvents` payload; failures raise `LambdaInvokeError`.
- `rudolph.eventupload`: `PostEventuploadHandler` checks the machine id,
  content type and body, tags each event with the machine id, and forwards the
  events to whichever of its Firehose, Kinesis and Lambda clients were given.
  With none given, events are accepted and dropped.
- `rudolph.preflight_sync`: the clean sync rules. A sensor is made to clean
  sync when it reports no rules, when there is no feed cursor yet, or when
  7 to 17 days have passed since its last clean sync; the extra days come from
  `machine_id_to_int`, so sensors do not all resync on the same day.
- `rudolph.preflight`: `PostPreflightHandler`, `PreflightRequest` and
  `PreflightResponse`.
- `rudolph.ruledownload`: `PostRuledownloadHandler`, `RuledownloadCursor`,
  `RuledownloadStrategy` (`CLEAN`, `INCREMENTAL`, `MACHINE`) and the request
  and response types. The cursor's strategy picks the downloader for each page.
- `rudolph.postflight`: `PostPostflightHandler` records the end of the sync and
  then removes rules marked for deletion.
- `rudolph.xsrf`: `PostXSRFHandler` answers `{"status":"ok"}`.

## Example

```python
from rudolph.gateway import ProxyRequest, Router
from rudolph.xsrf import PostXSRFHandler

router = Router([PostXSRFHandler()])
response = router.route(
    ProxyRequest(
        http_method="POST",
        resource="/xsrf/{machine_id}",
        path_parameters={"machine_id": "00000000-0000-0000-0000-000000000000"},
    )
)
print(response.status_code, response.body)   # 200 {"status":"ok"}
```

A request no handler claims gets a 405. If a handler's `boot` raises, the
router answers 500.

## What this package does not do

- It has no command and no server loop: you call `Router.route` or a
  handler's `handle` yourself from whatever receives the requests.
- It does not create cloud clients. `DynamoDBClient`, `FirehoseClient`,
  `KinesisClient` and `LambdaClient` all wrap a low-level service object that
  you supply.
- It has no storage layer for sync state, sensor data, machine configuration
  or rules. The preflight handler needs a machine configuration service and a
  state tracking service; the ruledownload handler needs a cursor service and
  global, feed and machine rule downloaders; the postflight handler needs a
  rule destroyer and a sync state updater. Their `boot` raises `RuntimeError`
  until these are given.

## Tests

```
pip install ".[test]"
pytest
```