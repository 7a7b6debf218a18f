# xraystrategy

Strategies for X-Ray style distributed tracing. The package covers three things: which requests to sample, what to do when a subsegment has no parent segment, and how errors become exception documents. It uses only the standard library.

## Install

```
pip install .
pip install ".[test]"   # with test requirements
```

## Sampling

### Local rules

`xraystrategy.sampling.localized.LocalizedStrategy` makes its decisions from a JSON rule manifest of version 1 or 2.

Each rule has two settings:

- `fixed_target`: the number of requests sampled per second, taken from a reservoir.
- `rate`: the fraction of requests sampled once the reservoir is empty.

Rules are tried in order, and the `default` rule applies when none of them matches. Matching compares `host`, `url_path` and `http_method`. It ignores case, and `*` and `?` work as wildcards. A request field that is empty matches anything.

In version 1 manifests a rule names the host in `service_name`. In version 2 it uses `host`.

```python
from xraystrategy.sampling.localized import LocalizedStrategy
from xraystrategy.sampling.request import Request

rules = b'''{
  "version": 2,
  "default": {"fixed_target": 1, "rate": 0.05},
  "rules": [
    {"host": "*", "http_method": "*", "url_path": "/checkout",
     "fixed_target": 10, "rate": 0.05}
  ]
}'''

strategy = LocalizedStrategy.from_json_bytes(rules)
decision = strategy.should_trace(Request(host="shop.example.com", method="GET", url="/checkout"))
print(decision.sample)
```

Other ways to build a strategy:

- `LocalizedStrategy.from_default_rules()` samples the first request each second and 5% of requests after that.
- `LocalizedStrategy.from_file_path(path)` reads the rules from a file.

To build a manifest directly, use `xraystrategy.sampling.manifest.manifest_from_json_bytes` or `manifest_from_file_path`. An invalid manifest raises `ManifestError`. Examples of invalid manifests:

- an unsupported version
- a missing default rule
- a negative target or rate
- a rule without its required fields

### Centralized rules

`xraystrategy.sampling.centralized.CentralizedStrategy` takes its rules and reservoir quotas from the tracing service, through a local daemon.

`xraystrategy.sampling.proxy.DaemonProxy` makes those calls. It sends unsigned JSON `POST` requests to `/GetSamplingRules` and `/SamplingTargets` at the daemon address, which defaults to `127.0.0.1:2000`.

The strategy falls back to a `LocalizedStrategy` in two cases:

- the service has not provided a default rule;
- the rules have not been refreshed within the last hour. This is always the case before the first successful refresh.

```python
from xraystrategy.sampling.centralized import CentralizedStrategy
from xraystrategy.sampling.request import Request

strategy = CentralizedStrategy.from_json_bytes(rules)   # local rules as the fallback
strategy.load_daemon_endpoints("127.0.0.1:2000")
decision = strategy.should_trace(Request(host="shop.example.com", method="GET", url="/"))
print(decision.sample, decision.rule)
strategy.stop()
```

The first call to `should_trace`, or an explicit `start()`, starts background threads:

- one that fetches the rules about every 300 seconds;
- one that reports statistics and fetches targets about every 10 seconds.

`stop()` ends those threads.

You can also refresh by hand:

- `refresh_manifest()` brings the rules up to date.
- `refresh_targets()` reports statistics from `snapshots()` and applies the returned targets through `update_target`.

Both raise `RefreshError` when the call fails or some of the data could not be applied.

For tests, the constructor accepts your own `proxy`, `clock` (a `xraystrategy.sampling.reservoir.Clock`) and `rand`.

## Context missing

`xraystrategy.ctxmissing` offers three strategies:

- `RuntimeErrorStrategy` raises `ContextMissingError`.
- `LogErrorStrategy` logs an error on the `xraystrategy` logger and carries on.
- `IgnoreErrorStrategy` does nothing.

## Exceptions

`xraystrategy.exception.DefaultFormattingStrategy(frame_count=32)` builds `XRayError` values that carry the captured stack frames. `frame_count` must be between 0 and 32; any other value raises `ValueError`.

The methods are:

- `error` and `errorf` build an error of type `"error"`.
- `panic` and `panicf` build one of type `"panic"`. Inside an `except` block they use the traceback of the exception being handled.
- `exception_from_error(err)` turns any exception into an `ExceptionDocument`. The document is marked remote when the exception has a non-empty `request_id`. `to_dict()` gives its JSON form.

`MultiError` joins several errors into one message.

## What this package does not do

It makes decisions only. It does not build, record or send segments or subsegments, and it does not include a daemon. Centralized sampling needs a daemon that is already running. Without one, it keeps using its local fallback rules.