"""Geolocation of peer IPs through the IP-API service, with a rate-limited worker."""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_IP_TTL = timedelta(days=30)
IP_CHAN_BUFF_SIZE = 45
IP_BUFF_SIZE = 8192
IP_API_ENDPOINT = (
    "http://ip-api.com/json/{__ip__}?fields=status,continent,continentCode,country,"
    "countryCode,region,regionName,city,zip,lat,lon,isp,org,as,asname,mobile,proxy,"
    "hosting,query"
)
MIN_ITER_TIME = 0.1
REQUEST_TIMEOUT = 30.0


class TooManyRequestsError(Exception):
    """The API answered HTTP 429; ``delay`` is how long to wait, in seconds."""

    def __init__(self, delay: float = 0.0) -> None:
        super().__init__("error HTTP 429")
        self.delay = delay


class QueueFullError(Exception):
    def __init__(self) -> None:
        super().__init__("queue is full")


class QueueEmptyError(Exception):
    def __init__(self) -> None:
        super().__init__("queue is empty")


@dataclass
class IpApiMsg:
    """The location fields returned by the API for one IP."""

    status: str = ""
    continent: str = ""
    continent_code: str = ""
    country: str = ""
    country_code: str = ""
    region: str = ""
    region_name: str = ""
    city: str = ""
    zip: str = ""
    lat: float = 0.0
    lon: float = 0.0
    isp: str = ""
    org: str = ""
    as_: str = ""
    asname: str = ""
    mobile: bool = False
    proxy: bool = False
    hosting: bool = False
    query: str = ""

    _JSON_KEYS = {
        "status": "status",
        "continent": "continent",
        "continentCode": "continent_code",
        "country": "country",
        "countryCode": "country_code",
        "region": "region",
        "regionName": "region_name",
        "city": "city",
        "zip": "zip",
        "lat": "lat",
        "lon": "lon",
        "isp": "isp",
        "org": "org",
        "as": "as_",
        "asname": "asname",
        "mobile": "mobile",
        "proxy": "proxy",
        "hosting": "hosting",
        "query": "query",
    }

    @classmethod
    def from_json(cls, data: Any) -> "IpApiMsg":
        if not isinstance(data, Mapping):
            raise ValueError("expected a JSON object")
        fields = {attr: data[key] for key, attr in cls._JSON_KEYS.items() if key in data}
        return cls(**fields)


@dataclass
class IpInfo:
    ip_api_msg: IpApiMsg
    expiration_time: datetime


@dataclass
class ApiResponse:
    ip_info: IpInfo
    delay: float = 0.0
    attempts_left: int = 0


class DBWriter(Protocol):
    def persist_to_db(self, item: Any) -> None: ...

    def read_ip_info(self, ip: str) -> IpInfo: ...

    def check_ip_records(self, ip: str) -> Tuple[bool, bool]: ...

    def get_expired_ip_info(self) -> List[str]: ...


def _header_int(headers: Mapping[str, str], name: str) -> int:
    try:
        return int(headers.get(name, ""))
    except (TypeError, ValueError):
        return 0


def call_ip_api(ip: str) -> ApiResponse:
    """Ask the API where an IP is.

    Raises TooManyRequestsError when rate limited, ConnectionError when the
    request fails and ValueError when the answer is unusable.
    """
    url = IP_API_ENDPOINT.replace("{__ip__}", ip, 1)
    try:
        resp = requests.get(url, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        raise ConnectionError(f"unable to locate IP {ip}: {exc}") from exc

    time_left = _header_int(resp.headers, "X-Ttl")
    if resp.status_code == 429:
        logger.debug("limit of requests per minute has been exceeded, wait %s secs", time_left)
        raise TooManyRequestsError(float(time_left))

    attempts_left = _header_int(resp.headers, "X-Rl")
    delay = float(time_left) if attempts_left <= 0 else 0.0

    try:
        msg = IpApiMsg.from_json(json.loads(resp.content))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"could not unmarshal response: {exc}") from exc
    if msg.status != "success":
        raise ValueError(f"status from ip different than success: {msg}")

    info = IpInfo(
        ip_api_msg=msg,
        expiration_time=datetime.now(timezone.utc) + DEFAULT_IP_TTL,
    )
    return ApiResponse(ip_info=info, delay=delay, attempts_left=attempts_left)


class IpQueue:
    """A bounded, thread-safe FIFO of distinct IPs."""

    def __init__(self, size: int = IP_BUFF_SIZE) -> None:
        self._size = size
        self._items: List[str] = []
        self._lock = threading.Lock()

    def add_item(self, item: str) -> None:
        """Queue an IP; an IP already queued is left alone. Raises QueueFullError."""
        with self._lock:
            if len(self._items) >= self._size:
                raise QueueFullError()
            if item not in self._items:
                self._items.append(item)

    def read_item(self) -> str:
        """Take the oldest IP; raises QueueEmptyError when there is none."""
        with self._lock:
            if not self._items:
                raise QueueEmptyError()
            return self._items.pop(0)

    def ip_exists(self, target: str) -> bool:
        with self._lock:
            return target in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class IpLocator:
    """Locates IPs in the background and stores the results through the DB writer."""

    def __init__(
        self,
        db_client: DBWriter,
        fetch: Callable[[str], ApiResponse] = call_ip_api,
        *,
        queue_size: int = IP_BUFF_SIZE,
        min_iter_time: float = MIN_ITER_TIME,
    ) -> None:
        self._db = db_client
        self._fetch = fetch
        self._min_iter_time = min_iter_time
        self._ip_queue = IpQueue(queue_size)
        self._requests: "queue.Queue[str]" = queue.Queue(maxsize=IP_CHAN_BUFF_SIZE)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.api_calls = 0

    @property
    def pending(self) -> int:
        """Number of IPs waiting in the queue."""
        return len(self._ip_queue)

    def run(self) -> None:
        """Start the background workers."""
        logger.info("IP locator routine started")
        self._threads = [
            threading.Thread(target=self._feed_requests, name="ip-queue-reader", daemon=True),
            threading.Thread(target=self._serve_requests, name="ip-locator", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def close(self) -> None:
        """Stop the background workers."""
        logger.info("closing IP-API service")
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)

    def locate_ip(self, ip: str) -> None:
        """Queue an IP unless it is already queued or has a fresh record."""
        if self._ip_queue.ip_exists(ip):
            return
        exists, expired = False, False
        try:
            exists, expired = self._db.check_ip_records(ip)
        except Exception as exc:  # the DB layer is external; carry on as if unknown
            logger.error("unable to check if IP already exists - %s", exc)
        if exists and not expired:
            return
        while True:
            try:
                self._ip_queue.add_item(ip)
                return
            except QueueFullError:
                if self._stop.wait(1.0):
                    return
                logger.debug("waiting to allocate a new IP request")

    def _feed_requests(self) -> None:
        while not self._stop.is_set():
            try:
                ip = self._ip_queue.read_item()
            except QueueEmptyError:
                pass
            else:
                if not self._put_request(ip):
                    return
            if self._stop.wait(self._min_iter_time):
                return

    def _put_request(self, ip: str) -> bool:
        while not self._stop.is_set():
            try:
                self._requests.put(ip, timeout=self._min_iter_time)
                return True
            except queue.Full:
                continue
        return False

    def _serve_requests(self) -> None:
        while not self._stop.is_set():
            try:
                ip = self._requests.get(timeout=self._min_iter_time)
            except queue.Empty:
                continue
            logger.log(5, "new request has been received for ip: %s", ip)
            delay = self._resolve(ip)
            if delay is None:
                return
            if delay > 0:
                logger.debug("number of allowed requests exceeded, waiting %s", delay + 2)
                if self._stop.wait(delay + 2):
                    return

    def _resolve(self, ip: str) -> Optional[float]:
        """Call the API until it answers; returns the wait it asks for, or None if stopped."""
        while True:
            self.api_calls += 1
            try:
                resp = self._fetch(ip)
            except TooManyRequestsError as exc:
                logger.debug("call %s -> %s, waiting %s", ip, exc, exc.delay + 5)
                if self._stop.wait(exc.delay + 5):
                    return None
                continue
            except (ConnectionError, ValueError, OSError) as exc:
                logger.debug("call %s -> diff error received: %s", ip, exc)
                return 0.0
            logger.debug("call %s -> api req success", ip)
            self._db.persist_to_db(resp.ip_info)
            return resp.delay