"""
SparkChat - Pub/sub transport.

The session never talks to the broker directly. It talks to a Transport,
which supplies connect/subscribe/publish/disconnect and reports what
happens on the wire through callback attributes:

- on_connect_callback()                  broker accepted the connection
- on_message_callback(topic, payload)    inbound publish
- on_error_callback(error)               connection attempt failed
- on_offline_callback()                  connection dropped
- on_reconnecting_callback()             transport is retrying on its own

Callbacks are always invoked on the asyncio event loop that called
connect(), never on a library thread.

MqttTransport implements this contract on paho-mqtt. paho runs its network
loop on a background thread and retries lost connections itself, so this
module only bridges its callbacks onto the event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from .constants import (
    DEFAULT_WEBSOCKET_PATH,
    KEEPALIVE_INTERVAL,
    PUBLISH_QOS,
    RECONNECT_INTERVAL,
    SUBSCRIBE_TIMEOUT,
)
from .errors import ErrorCode, RaceAbort, TransportError

logger = logging.getLogger(__name__)

PublishCallback = Callable[[Optional[TransportError]], None]

# scheme -> (paho transport, use TLS, default port)
_SCHEMES = {
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


@dataclass
class ConnectOptions:
    """Options passed to Transport.connect()."""

    clean_session: bool = True
    reconnect_interval: int = RECONNECT_INTERVAL  # seconds


@dataclass
class BrokerEndpoint:
    """A broker address split into what the MQTT client needs."""

    host: str
    port: int
    transport: str
    tls: bool
    path: str = DEFAULT_WEBSOCKET_PATH


def parse_broker_address(address: str) -> BrokerEndpoint:
    """
    Parse a broker address such as "wss://test.mosquitto.org:8081".

    Raises:
        TransportError: If the scheme is unsupported or the host is missing
    """
    try:
        parts = urlsplit(address)
        port = parts.port
    except ValueError as e:
        raise TransportError(
            ErrorCode.E301_CONNECTION_FAILED, f"Invalid broker address: {address}", {"error": str(e)}
        ) from e

    if parts.scheme not in _SCHEMES or not parts.hostname:
        raise TransportError(
            ErrorCode.E301_CONNECTION_FAILED,
            f"Unsupported broker address: {address}",
            {"scheme": parts.scheme},
        )

    transport, tls, default_port = _SCHEMES[parts.scheme]
    return BrokerEndpoint(
        host=parts.hostname,
        port=port or default_port,
        transport=transport,
        tls=tls,
        path=parts.path or DEFAULT_WEBSOCKET_PATH,
    )


class Transport(ABC):
    """
    Contract between the session and a pub/sub broker client.

    One instance represents one connection handle: the session creates a
    fresh transport for every connect and discards it after disconnect().
    """

    def __init__(self):
        self.on_connect_callback: Optional[Callable[[], None]] = None
        self.on_message_callback: Optional[Callable[[str, bytes], None]] = None
        self.on_error_callback: Optional[Callable[[Exception], None]] = None
        self.on_offline_callback: Optional[Callable[[], None]] = None
        self.on_reconnecting_callback: Optional[Callable[[], None]] = None

        self._callback_tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def connect(
        self, broker_address: str, client_id: str, options: Optional[ConnectOptions] = None
    ) -> None:
        """
        Start connecting to the broker.

        Returns once the attempt is under way; success is reported through
        on_connect_callback.

        Raises:
            TransportError: If the connection cannot even be attempted
        """

    @abstractmethod
    async def subscribe(self, topics: List[str]) -> None:
        """
        Subscribe to topics.

        Raises:
            TransportError: If the broker rejects or never confirms the subscription
        """

    @abstractmethod
    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = PUBLISH_QOS,
        callback: Optional[PublishCallback] = None,
    ) -> None:
        """
        Fire-and-forget publish.

        The optional callback receives None once the payload was handed to
        the network, or the TransportError that prevented it.

        Raises:
            RaceAbort: If the connection handle is already gone
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection and stop any retries."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the broker connection is currently up."""

    def _emit(self, callback: Optional[Callable], *args) -> None:
        """Invoke a callback on the event loop, isolating its failures."""
        if callback is None:
            return
        try:
            if asyncio.iscoroutinefunction(callback):
                task = asyncio.create_task(callback(*args))
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_tasks.discard)
            else:
                callback(*args)
        except Exception as e:
            logger.error(f"Transport callback error: {e}", exc_info=True)


class MqttTransport(Transport):
    """
    Transport backed by a paho-mqtt client.

    Supports plain TCP (mqtt://, tcp://), TLS (mqtts://, ssl://) and
    WebSockets (ws://, wss://) broker addresses.
    """

    def __init__(self, keepalive: int = KEEPALIVE_INTERVAL, subscribe_timeout: float = SUBSCRIBE_TIMEOUT):
        """
        Initialize transport.

        Args:
            keepalive: MQTT keepalive interval (seconds)
            subscribe_timeout: Time to wait for a SUBACK (seconds)
        """
        super().__init__()
        self.keepalive = keepalive
        self.subscribe_timeout = subscribe_timeout

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        self._closing = False
        self._pending_subscribes: Dict[int, asyncio.Future] = {}

    async def connect(
        self, broker_address: str, client_id: str, options: Optional[ConnectOptions] = None
    ) -> None:
        """Configure a paho client and start its network thread."""
        options = options or ConnectOptions()
        endpoint = parse_broker_address(broker_address)
        self._loop = asyncio.get_running_loop()
        self._closing = False

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=options.clean_session,
            transport=endpoint.transport,
        )
        if endpoint.transport == "websockets":
            client.ws_set_options(path=endpoint.path)
        if endpoint.tls:
            client.tls_set()
        client.reconnect_delay_set(
            min_delay=options.reconnect_interval, max_delay=options.reconnect_interval
        )

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe

        try:
            client.connect_async(endpoint.host, endpoint.port, keepalive=self.keepalive)
            result = client.loop_start()
        except (OSError, ValueError) as e:
            raise TransportError(
                ErrorCode.E301_CONNECTION_FAILED,
                f"Cannot connect to {broker_address}: {e}",
                {"broker": broker_address},
            ) from e

        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(
                ErrorCode.E301_CONNECTION_FAILED,
                f"Cannot start network loop: {mqtt.error_string(result)}",
                {"broker": broker_address},
            )

        self._client = client
        logger.info(f"Connecting to {endpoint.host}:{endpoint.port} as {client_id}")

    async def subscribe(self, topics: List[str]) -> None:
        """Subscribe at QoS 0 and wait for the broker's SUBACK."""
        if self._client is None or not self._connected:
            raise TransportError(ErrorCode.E302_SUBSCRIBE_FAILED, "Cannot subscribe: not connected")

        result, mid = self._client.subscribe([(topic, PUBLISH_QOS) for topic in topics])
        if result != mqtt.MQTT_ERR_SUCCESS or mid is None:
            raise TransportError(
                ErrorCode.E302_SUBSCRIBE_FAILED,
                f"Subscribe failed: {mqtt.error_string(result)}",
                {"topics": topics},
            )

        # The SUBACK is bridged through call_soon_threadsafe, so it cannot be
        # resolved before this future is registered.
        future = asyncio.get_running_loop().create_future()
        self._pending_subscribes[mid] = future
        try:
            await asyncio.wait_for(future, self.subscribe_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                ErrorCode.E302_SUBSCRIBE_FAILED, "Subscribe timed out", {"topics": topics}
            ) from e
        finally:
            self._pending_subscribes.pop(mid, None)

        logger.debug(f"Subscribed to {len(topics)} topics")

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = PUBLISH_QOS,
        callback: Optional[PublishCallback] = None,
    ) -> None:
        client = self._client
        if client is None:
            raise RaceAbort(details={"topic": topic})

        info = client.publish(topic, payload, qos=qos)
        error = None
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            error = TransportError(
                ErrorCode.E303_PUBLISH_FAILED,
                f"Publish failed: {mqtt.error_string(info.rc)}",
                {"topic": topic},
            )
            logger.warning(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

        if callback:
            callback(error)

    async def disconnect(self) -> None:
        """Disconnect and join the paho network thread."""
        self._closing = True
        client = self._client
        self._client = None
        self._connected = False

        for future in self._pending_subscribes.values():
            if not future.done():
                future.cancel()
        self._pending_subscribes.clear()

        if client is not None:
            client.disconnect()
            await asyncio.to_thread(client.loop_stop)
            logger.info("Disconnected from broker")

    def is_connected(self) -> bool:
        return self._connected

    # paho callbacks: these run on the paho network thread

    def _dispatch(self, handler: Callable, *args) -> None:
        loop = self._loop
        if self._closing or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(handler, *args)

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            error = TransportError(
                ErrorCode.E301_CONNECTION_FAILED,
                f"Broker refused connection: {reason_code}",
            )
            self._dispatch(self._handle_error, error)
            return
        self._dispatch(self._handle_connect)

    def _on_connect_fail(self, client, userdata) -> None:
        error = TransportError(ErrorCode.E301_CONNECTION_FAILED, "Connection attempt failed")
        self._dispatch(self._handle_error, error)
        self._dispatch(self._handle_reconnecting)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        self._dispatch(self._handle_offline, str(reason_code))
        self._dispatch(self._handle_reconnecting)

    def _on_message(self, client, userdata, msg) -> None:
        self._dispatch(self._handle_message, msg.topic, bytes(msg.payload))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        self._dispatch(self._handle_suback, mid, list(reason_code_list))

    # Event loop side

    def _handle_connect(self) -> None:
        self._connected = True
        logger.info("Broker connection established")
        self._emit(self.on_connect_callback)

    def _handle_error(self, error: TransportError) -> None:
        self._connected = False
        logger.error(f"Broker connection error: {error}")
        self._emit(self.on_error_callback, error)

    def _handle_offline(self, reason: str) -> None:
        self._connected = False
        logger.warning(f"Broker connection lost: {reason}")
        self._emit(self.on_offline_callback)

    def _handle_reconnecting(self) -> None:
        logger.info("Reconnecting to broker...")
        self._emit(self.on_reconnecting_callback)

    def _handle_message(self, topic: str, payload: bytes) -> None:
        self._emit(self.on_message_callback, topic, payload)

    def _handle_suback(self, mid: int, reason_codes: list) -> None:
        future = self._pending_subscribes.get(mid)
        if future is None or future.done():
            return

        failed = [str(rc) for rc in reason_codes if rc.is_failure]
        if failed:
            future.set_exception(
                TransportError(
                    ErrorCode.E302_SUBSCRIBE_FAILED,
                    f"Broker rejected subscription: {', '.join(failed)}",
                )
            )
        else:
            future.set_result(None)
