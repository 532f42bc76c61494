# armiarma

Building blocks for a crawler that walks a libp2p network: Ethereum consensus
layer, IPFS or Filecoin. The package decides which known peers to dial and
when. It penalises peers that do not answer and drops those that have been
silent too long. It records every dial, connection and identification through
a database client that you supply.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

### `armiarma.peering.delays`

- `ConnError`: the known dial outcomes, for example `"None"` for success,
  `"i/o timeout"` and `"no route to host"`.
- `Delay`: the delay classes `POSITIVE`, `NEGATIVE_WITH_HOPE`,
  `NEGATIVE_WITH_NO_HOPE`, `ZERO`, `MINUS1` and `TIMEOUT`.
- `error_to_delay_type(error)`: maps an error string or a `ConnError` to a
  `Delay`. Unknown errors map to `NEGATIVE_WITH_HOPE`.
- `DelayObject`: holds a delay class and a degree. `calculate_delay()` returns
  a fixed initial delay per class. For `TIMEOUT` the delay starts at 32 minutes
  and doubles with each degree.

### `armiarma.peering.peer_queue`

- `PrunedPeer`: a peer with its addresses, last connection error and delay.
  - `next_connection()` returns the next dial time, capped at
    `MAX_DELAY_TIME` (2048 minutes) after the last event.
  - `conn_event_handler(error)` updates the delay after a dial.
  - `deprecable()` is true once 30 days have passed without a positive
    connection.
  - A `clock` callable can be passed in to control time.
- `PeerQueue`: peers sorted by next connection time.
  - `get_next_peer()`, `valid_next_peer()` and `reset_peer_pointer()` walk the
    queue.
  - `add_peer()`, `remove_peer()` and `get_peer()` manage entries.
  - `delay_distribution()` and `total_conn_error_distribution()` count peers
    by delay class and by last error.
  - `update_peer_list_from_remote_db()` adds the peers returned by the
    database client's `get_non_deprecated_peers()` that are not queued yet,
    then sorts the queue.

### `armiarma.peering.strategy`

- `PeeringStrategy`: the abstract interface a strategy provides.
- `PruningStrategy(db_client, network)`: the strategy this package ships.
  - `run()` starts two background threads and returns a `queue.Queue` of
    `HostInfo` items. The queue ends with `None` after `stop()`.
  - Every `next_peer()` call hands out one more peer that is due.
  - Dial outcomes (`new_connection_attempt`) update the peer's delay.
    Deprecated peers are removed from the queue.
  - Attempts, paired connection and disconnection events (`ConnEvent`) and
    identifications are passed to `db_client.persist_to_db()`.
  - Metrics: `last_iter_time()`, `attempted_peers_since_last_iter()`,
    `control_distribution()`, `get_error_attempt_distribution()`,
    `get_conn_error_distribution()` and `get_total_conn_error_distribution()`.
- Data classes: `HostInfo`, `ConnectionAttempt`, `ConnInfo`, `EndConnInfo`,
  `EventTrace`, `ConnEvent` and `IdentificationEvent`.

### `armiarma.peering.service`

- `PeeringService(host, strategy)`: a pool of worker threads that take peers
  from the strategy's stream and dial them.
  - Dials go through `host.connect(addr_info, timeout)`.
  - Peers already listed by `host.peers()` are skipped.
  - Failed dials are retried with `dynamic_backoff(attempt, error_type)`
    until the backoff exceeds one minute.
  - Each outcome goes back to the strategy.
  - Events from `host.conn_events()` and `host.ident_events()` are forwarded
    to the strategy.
- `dynamic_backoff(attempt, error_type)`: returns a base delay doubled once per
  attempt, plus up to 500 ms of random jitter. The base delay is 5 s for
  timeouts and refusals, 10 s for backoff and missing addresses, and 2 s
  otherwise.

### `armiarma.peering.metrics`

- `peering_metrics(strategy)`: builds a `MetricsModule` with one `IndvMetric`
  per strategy distribution.
- `MetricsModule.update()`: refreshes every metric, stores the values in
  in-process gauges and returns a summary keyed by metric name.

### `armiarma.utils`

- `multiaddress`:
  - `Multiaddr` and `unmarshal_maddr` parse and validate addresses.
  - `extract_ip_from_maddr` and `get_port_from_maddr` return the IP and the
    port.
  - `is_ip_public`, `check_valid_ip` and `get_public_addr_from_addr_array`
    check and select IPs.
  - `comp_addr_info` builds an `AddrInfo` after checking that the base58 peer
    id decodes.
- `useragent`: `parse_client_type(network, user_agent)` returns a `ClientInfo`
  with the client name, version, OS and architecture.
- `keys`: secp256k1 keys built on `cryptography`.
  - `generate_ecdsa_priv_key` creates a key and `parse_ecdsa_private_key`
    reads one from hex.
  - `adapt_secp256k1_from_ecdsa` and `adapt_ecdsa_from_secp256k1` convert
    between ECDSA keys and `Secp256k1PrivateKey`. `Secp256k1PublicKey` covers
    public keys.
  - `secp256k1_to_string` returns a key as hex.
  - `is_*_valid_ethereum_*_key` checks whether a key is valid for Ethereum.
- `ip_api`:
  - `call_ip_api(ip)` queries the IP-API geolocation service.
  - `IpLocator(db_client)` queues IPs with `locate_ip()` and resolves them in
    the background after `run()`. It honours the service's rate limits and
    stores results with `db_client.persist_to_db()`.
  - `IpQueue` is the bounded queue of distinct IPs that `IpLocator` uses.
- `logger`: `parse_log_level`, `parse_log_output` and `parse_log_formatter`
  turn configuration strings into `logging` objects. The module also adds a
  `TRACE` level (5).
- `basic_ops` and `files`: small list, time-parsing and file helpers.

## Examples

Parsing a peer's user agent:

```python
from armiarma.utils.useragent import NetworkType, parse_client_type

info = parse_client_type(NetworkType.ETHEREUM, "Lighthouse/v1.5.1-b0ac346/x86_64-linux")
# info.name == "lighthouse", info.version == "v1.5.1",
# info.os == "linux", info.arch == "x86_64"
```

Delay classes and the next dial time of a peer:

```python
from armiarma.peering.delays import Delay, error_to_delay_type
from armiarma.peering.peer_queue import PrunedPeer

assert error_to_delay_type("i/o timeout") is Delay.TIMEOUT

peer = PrunedPeer("peer-1")
peer.conn_event_handler("None")   # a successful dial
peer.next_connection()            # two minutes from now
```

Extracting the IP and port from a multiaddress:

```python
from armiarma.utils.multiaddress import extract_ip_from_maddr, get_port_from_maddr, unmarshal_maddr

maddr = unmarshal_maddr("/ip4/1.2.3.4/tcp/9000")
extract_ip_from_maddr(maddr)   # IPv4Address('1.2.3.4')
get_port_from_maddr(maddr)     # 9000
```

## What this package does not do

- It has no libp2p networking of its own. `PeeringService` needs a host object
  that provides `peers()`, `connect(addr_info, timeout)`, `conn_events()` and
  `ident_events()`.
- It has no storage. `PruningStrategy` and `IpLocator` need a database client
  that you supply. It must provide `get_non_deprecated_peers()` and
  `persist_to_db()`, and for `IpLocator` also `check_ip_records()`.
- It does not serve metrics over HTTP and has no Prometheus exporter. Gauge
  values stay in the process and are returned by `MetricsModule.update()`.
- It has no command-line program.