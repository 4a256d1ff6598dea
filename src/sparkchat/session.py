"""
SparkChat - Chat session protocol engine.

A ChatSession owns everything that belongs to one participant in one room:
the local identity, the peer table, the message log, typing presence and
the peer key directory. It drives a Transport and reacts to what the
transport reports.

Concurrency model:
- Everything runs on one asyncio event loop.
- Inbound (topic, payload) events are queued and handled one at a time by
  a single dispatch worker, so no two handlers mutate session state
  concurrently.
- Handlers suspend only for cryptography (key import, decrypt), which runs
  in a worker thread. The key directory covers the one race this opens.
- State is grouped into epochs. A reconnect starts a new epoch: the log,
  peers, typing state and key cache are cleared, the identity is kept, and
  anything still in flight from the old epoch is discarded.

Nothing that arrives from the network can end the session: invalid
envelopes, bad keys and undecryptable payloads are logged and dropped.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import ec

from .config import ServerConfig, SessionSettings
from .connection_fsm import ConnectionEvent, ConnectionStateMachine, ConnectionStatus
from .constants import PUBLISH_QOS
from .crypto import (
    KeyPair,
    decrypt,
    encrypt_for_recipients,
    generate_client_id,
    generate_key_pair,
    generate_message_id,
)
from .errors import EncryptionFailed, RaceAbort, SparkChatError, TransportError
from .keystore import PeerKeyDirectory
from .message import Message, MessageLog, MessageReceipt, ReceiptStatus
from .peer import PeerTable
from .presence import TypingState
from .protocol import (
    DeliveryReceipt,
    EncryptedMessage,
    Envelope,
    EnvelopeKind,
    PublicKeyAnnouncement,
    PublicKeyRequest,
    Topics,
    TypingEvent,
    decode,
    encode,
)
from .transport import ConnectOptions, MqttTransport, Transport
from .utils import format_typing_summary, now_ms

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]


@dataclass(frozen=True)
class Identity:
    """Who we are for the lifetime of a session."""

    key_pair: KeyPair
    public_key: str
    display_name: str
    client_id: str

    @property
    def private_key(self) -> ec.EllipticCurvePrivateKey:
        return self.key_pair.private_key

    def renamed(self, display_name: str) -> "Identity":
        """Same keys and client id under a new display name."""
        return replace(self, display_name=display_name)


def build_identity(display_name: str, key_pair: Optional[KeyPair] = None) -> Identity:
    """
    Build an identity, generating a key pair unless one is given.

    Raises:
        CryptoUnavailable: If no key pair can be generated
    """
    if key_pair is None:
        key_pair = generate_key_pair()
    return Identity(
        key_pair=key_pair,
        public_key=key_pair.export_public_key(),
        display_name=display_name,
        client_id=generate_client_id(),
    )


async def create_identity(display_name: str) -> Identity:
    """
    Generate a fresh identity off the event loop.

    Raises:
        CryptoUnavailable: If no key pair can be generated; a session cannot start
    """
    key_pair = await asyncio.to_thread(generate_key_pair)
    identity = build_identity(display_name, key_pair)
    logger.info(f"Identity created for {display_name} ({identity.client_id})")
    return identity


class ChatSession:
    """
    End-to-end encrypted group chat over a pub/sub broker.

    Construct with an Identity, then `await connect()`. Front ends observe
    the session through on_change_callback (state changed, no arguments)
    and on_status_change_callback (new ConnectionStatus).
    """

    def __init__(
        self,
        identity: Identity,
        server_config: Optional[ServerConfig] = None,
        transport_factory: TransportFactory = MqttTransport,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize session.

        Args:
            identity: Local identity (kept across reconnects)
            server_config: Broker address and topic prefix
            transport_factory: Creates a fresh Transport per connection
            settings: Typing and reconnect timing
            clock: Millisecond wall clock

        Raises:
            ConfigError: If the settings are inconsistent
        """
        self.identity = identity
        self.server_config = server_config or ServerConfig()
        self.settings = settings or SessionSettings()
        self.settings.validate()

        self._transport_factory = transport_factory
        self._clock = clock

        self.topics = Topics(self.server_config.topic_prefix)
        self.messages = MessageLog()
        self.peers = PeerTable()
        self.typing = TypingState()
        self.key_directory = PeerKeyDirectory()

        self.fsm = ConnectionStateMachine()
        self.fsm.on_state_change = self._on_status_change

        # Callbacks
        self.on_change_callback: Optional[Callable[[], None]] = None
        self.on_status_change_callback: Optional[Callable[[ConnectionStatus], None]] = None

        self._client: Optional[Transport] = None
        self._epoch = 0
        self._inbox: Optional["asyncio.Queue[Tuple[int, str, bytes]]"] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._bootstrap_task: Optional[asyncio.Task] = None
        self._typing_stop_handle: Optional[asyncio.TimerHandle] = None
        self._last_typing_emit = 0

        self._handlers = {
            EnvelopeKind.MESSAGE: self._handle_encrypted_message,
            EnvelopeKind.TYPING: self._handle_typing_event,
            EnvelopeKind.PUBKEY_ANNOUNCE: self._handle_key_announcement,
            EnvelopeKind.PUBKEY_REQUEST: self._handle_key_request,
            EnvelopeKind.RECEIPT: self._handle_receipt,
        }

    # Status

    @property
    def status(self) -> ConnectionStatus:
        return self.fsm.get_state()

    def is_connected(self) -> bool:
        """Check if a transport is attached and reports connected."""
        return self._client is not None and self.fsm.is_connected()

    def typing_summary(self) -> Optional[str]:
        """Human-readable summary of who is typing, or None."""
        names = self.typing.snapshot(self._clock(), self.settings.typing_expiry_ms)
        return format_typing_summary(names)

    # Lifecycle

    async def connect(self) -> None:
        """
        Attach a new transport and start connecting.

        Transport failures are reflected in the connection status, not raised.
        """
        if self._client is not None:
            logger.debug("connect() ignored: already attached to a transport")
            return

        self._start_tasks()

        client = self._transport_factory()
        client.on_connect_callback = self._on_transport_connect
        client.on_message_callback = self._on_transport_message
        client.on_error_callback = self._on_transport_error
        client.on_offline_callback = self._on_transport_offline
        client.on_reconnecting_callback = self._on_transport_reconnecting
        self._client = client

        self.fsm.transition(ConnectionEvent.CONNECT_REQUESTED)
        options = ConnectOptions(clean_session=True, reconnect_interval=self.settings.reconnect_interval)

        try:
            await client.connect(self.server_config.broker_address, self.identity.client_id, options)
        except TransportError as e:
            logger.error(f"Connection to {self.server_config.broker_address} failed: {e}")
            if self._client is client:
                self._client = None
            self._detach(client)
            self.fsm.transition(ConnectionEvent.ERROR_OCCURRED, str(e))
            return

        if self._client is not client:
            # disconnect() ran while the connection was being set up
            self._detach(client)
            await client.disconnect()

    async def disconnect(self) -> None:
        """Tear down the transport and stop timers. Session state is kept."""
        self._cancel_typing_timer()
        await self._cancel_task(self._sweep_task)
        self._sweep_task = None
        await self._teardown_client()
        self.fsm.transition(ConnectionEvent.CLOSE_REQUESTED)

    async def reconnect(self) -> None:
        """Start a new connection epoch on the same identity."""
        logger.info("Reconnecting...")
        await self.disconnect()
        self.reset_for_reconnection()
        await self.connect()

    async def change_server(self, server_config: ServerConfig) -> None:
        """
        Move to another broker or room.

        Raises:
            ConfigError: If the new configuration is invalid
        """
        server_config.validate()
        await self.disconnect()
        self.server_config = server_config
        self.topics = Topics(server_config.topic_prefix)
        self.reset_for_reconnection()
        logger.info(f"Server changed to {server_config.broker_address} ({server_config.topic_prefix})")
        await self.connect()

    async def close(self) -> None:
        """Disconnect and stop the dispatch worker."""
        await self.disconnect()
        await self._cancel_task(self._worker_task)
        self._worker_task = None
        self._inbox = None

    def reset_for_reconnection(self) -> None:
        """
        Clear all per-epoch state: messages, peers, typing and cached keys.

        The identity (key pair, display name, client id) is preserved.
        """
        self._epoch += 1
        self._cancel_typing_timer()
        self._last_typing_emit = 0

        self.messages.clear()
        self.peers.clear()
        self.typing.clear()
        self.key_directory.clear()

        logger.info(f"Session state reset (epoch {self._epoch})")
        self._notify_change()

    def rename(self, display_name: str) -> None:
        """Switch to a new display name; keys and client id stay the same."""
        name = display_name.strip()
        if not name or name == self.identity.display_name:
            return
        self.identity = self.identity.renamed(name)
        logger.info(f"Display name changed to {name}")
        if self.is_connected():
            self.announce_public_key()
        self._notify_change()

    async def wait_until_idle(self) -> None:
        """Wait until connection bootstrap and every queued event are handled."""
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            await asyncio.wait([self._bootstrap_task])
        if self._inbox is not None:
            await self._inbox.join()

    def _start_tasks(self) -> None:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._dispatch_worker())
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _teardown_client(self) -> None:
        client = self._client
        self._client = None
        await self._cancel_task(self._bootstrap_task)
        self._bootstrap_task = None

        if client is None:
            return
        self._detach(client)
        try:
            await client.disconnect()
        except TransportError as e:
            logger.warning(f"Error while disconnecting: {e}")

    @staticmethod
    def _detach(client: Transport) -> None:
        client.on_connect_callback = None
        client.on_message_callback = None
        client.on_error_callback = None
        client.on_offline_callback = None
        client.on_reconnecting_callback = None

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # Transport events

    def _on_transport_connect(self) -> None:
        self.fsm.transition(ConnectionEvent.CONNECTED)
        client = self._client
        if client is not None:
            self._bootstrap_task = asyncio.create_task(self._bootstrap(client))

    def _on_transport_message(self, topic: str, payload: bytes) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait((self._epoch, topic, payload))

    def _on_transport_error(self, error: Exception) -> None:
        self.fsm.transition(ConnectionEvent.ERROR_OCCURRED, str(error))

    def _on_transport_offline(self) -> None:
        self.fsm.transition(ConnectionEvent.OFFLINE)

    def _on_transport_reconnecting(self) -> None:
        self.fsm.transition(ConnectionEvent.RECONNECTING)
        self.reset_for_reconnection()

    def _on_status_change(self, old: ConnectionStatus, new: ConnectionStatus) -> None:
        if self.on_status_change_callback:
            self.on_status_change_callback(new)

    async def _bootstrap(self, client: Transport) -> None:
        """Subscribe, then announce our key and ask everyone else for theirs."""
        try:
            await client.subscribe(self.topics.all())
        except TransportError as e:
            logger.error(f"Subscription error: {e}")
            return

        if client is not self._client:
            return
        self.announce_public_key()
        self.request_public_keys()

    # Dispatch

    async def _dispatch_worker(self) -> None:
        inbox = self._inbox
        while inbox is not None:
            epoch, topic, payload = await inbox.get()
            try:
                if epoch == self._epoch:
                    await self.handle_message(topic, payload)
                else:
                    logger.debug(f"Dropped event from previous epoch on {topic}")
            except Exception as e:
                logger.error(f"Unexpected error handling event on {topic}: {e}", exc_info=True)
            finally:
                inbox.task_done()

    async def handle_message(self, topic: str, payload: bytes) -> None:
        """
        Decode and handle one inbound payload.

        Invalid or undecryptable traffic is logged and dropped; this never raises
        for anything that came from the network.
        """
        kind = self.topics.kind_for(topic)
        if kind is None:
            logger.debug(f"Ignoring payload on unknown topic {topic}")
            return

        epoch = self._epoch
        try:
            envelope = decode(kind, payload)
            changed = await self._handlers[kind](envelope, epoch)
        except SparkChatError as e:
            logger.debug(f"Dropped {kind.name} envelope: {e}")
            return

        if changed:
            self._notify_change()

    async def _handle_encrypted_message(self, msg: EncryptedMessage, epoch: int) -> bool:
        if msg.username == self.identity.display_name:
            return False

        self.peers.update(
            msg.username,
            self._clock(),
            has_public_key=msg.sender_public_key in self.key_directory,
            public_key=msg.sender_public_key,
        )

        sender = await self.key_directory.import_or_get(msg.sender_public_key)
        if epoch != self._epoch:
            return False
        self.peers.update(msg.username, self._clock(), has_public_key=True)

        ciphertext = msg.encrypted.get(self.identity.public_key)
        if ciphertext is None:
            # Encrypted before our key reached the sender
            self.send_receipt(msg.id, ReceiptStatus.RECEIVED)
            return True

        text = await asyncio.to_thread(decrypt, ciphertext, self.identity.private_key, sender.key)
        if epoch != self._epoch:
            return False

        message = Message(id=msg.id, username=msg.username, text=text, timestamp=int(msg.timestamp))
        self.send_receipt(msg.id, ReceiptStatus.DECRYPTED)
        self.messages.add(message)
        return True

    async def _handle_typing_event(self, event: TypingEvent, epoch: int) -> bool:
        if event.username == self.identity.display_name:
            return False

        known = event.public_key in self.key_directory
        self.peers.update(
            event.username, self._clock(), has_public_key=known, public_key=event.public_key
        )

        if not known:
            await self.key_directory.import_or_get(event.public_key)
            if epoch != self._epoch:
                return False
            self.peers.update(event.username, self._clock(), has_public_key=True)

        if event.is_typing:
            self.typing.set(event.username, int(event.timestamp))
        else:
            self.typing.remove(event.username)
        return True

    async def _handle_key_announcement(self, announcement: PublicKeyAnnouncement, epoch: int) -> bool:
        if announcement.username == self.identity.display_name:
            return False

        await self.key_directory.import_or_get(announcement.public_key)
        if epoch != self._epoch:
            return False

        self.peers.update(
            announcement.username,
            self._clock(),
            has_public_key=True,
            public_key=announcement.public_key,
        )
        logger.debug(f"Public key received from {announcement.username}")
        return True

    async def _handle_key_request(self, request: PublicKeyRequest, epoch: int) -> bool:
        if request.requester_id != self.identity.client_id:
            self.announce_public_key()
        return False

    async def _handle_receipt(self, receipt: DeliveryReceipt, epoch: int) -> bool:
        if receipt.username == self.identity.display_name:
            return False
        return self.messages.apply_receipt(
            receipt.message_id,
            MessageReceipt(
                username=receipt.username, status=receipt.status, timestamp=int(receipt.timestamp)
            ),
        )

    # Outbound

    async def send_message(self, text: str) -> Optional[Message]:
        """
        Encrypt text for every known peer plus ourselves and publish it.

        Returns:
            The appended Message, or None if nothing was sent
        """
        text = text.strip()
        if not text or not self.is_connected():
            return None

        self.emit_typing_status(False)
        self._cancel_typing_timer()

        client = self._client
        recipients = self.key_directory.values()
        keys = [r.key for r in recipients] + [self.identity.key_pair.public_key]

        try:
            ciphertexts = await asyncio.to_thread(
                encrypt_for_recipients, text, self.identity.private_key, keys
            )
        except EncryptionFailed as e:
            logger.error(f"Message not sent: {e}")
            return None

        encrypted = {r.serialized: c for r, c in zip(recipients, ciphertexts)}
        encrypted[self.identity.public_key] = ciphertexts[-1]

        timestamp = self._clock()
        envelope = EncryptedMessage(
            id=generate_message_id(timestamp),
            username=self.identity.display_name,
            encrypted=encrypted,
            timestamp=timestamp,
            sender_public_key=self.identity.public_key,
        )

        try:
            self._publish(envelope, expected_client=client)
        except RaceAbort as e:
            logger.warning(f"Client disconnected during message encryption: {e}")
            return None

        message = Message(id=envelope.id, username=envelope.username, text=text, timestamp=timestamp)
        self.messages.add(message)
        self._notify_change()
        return message

    def handle_typing(self, has_content: bool) -> None:
        """
        Report local input activity.

        Emits a typing-start at most once per throttle interval and (re)arms
        a deferred typing-stop after the idle timeout.
        """
        if not has_content or not self.is_connected():
            return

        now = self._clock()
        if now - self._last_typing_emit > self.settings.typing_throttle_ms:
            self.emit_typing_status(True)
            self._last_typing_emit = now

        self._cancel_typing_timer()
        loop = asyncio.get_running_loop()
        self._typing_stop_handle = loop.call_later(
            self.settings.typing_timeout_ms / 1000, self._on_typing_timeout
        )

    def _on_typing_timeout(self) -> None:
        self._typing_stop_handle = None
        self.emit_typing_status(False)

    def _cancel_typing_timer(self) -> None:
        if self._typing_stop_handle is not None:
            self._typing_stop_handle.cancel()
            self._typing_stop_handle = None

    def emit_typing_status(self, is_typing: bool) -> bool:
        """Publish a typing start/stop signal. Returns False if not connected."""
        if not self.is_connected():
            return False
        self._publish(
            TypingEvent(
                username=self.identity.display_name,
                is_typing=is_typing,
                timestamp=self._clock(),
                public_key=self.identity.public_key,
            )
        )
        return True

    def announce_public_key(self) -> bool:
        """Broadcast our public key. Returns False if there is no transport."""
        if self._client is None:
            return False
        self._publish(
            PublicKeyAnnouncement(
                username=self.identity.display_name,
                public_key=self.identity.public_key,
                timestamp=self._clock(),
            )
        )
        return True

    def request_public_keys(self) -> bool:
        """Ask every other peer to re-announce. Returns False if there is no transport."""
        if self._client is None:
            return False
        self._publish(PublicKeyRequest(requester_id=self.identity.client_id, timestamp=self._clock()))
        return True

    def send_receipt(self, message_id: str, status: ReceiptStatus) -> bool:
        """Report delivery progress for a message. Returns False if there is no transport."""
        if self._client is None:
            return False
        self._publish(
            DeliveryReceipt(
                message_id=message_id,
                username=self.identity.display_name,
                status=status,
                timestamp=self._clock(),
            )
        )
        return True

    def _publish(self, envelope: Envelope, expected_client: Optional[Transport] = None) -> None:
        """
        Publish an envelope on its topic.

        Raises:
            RaceAbort: If the transport is gone, or was replaced since
                expected_client was captured
        """
        topic = self.topics.topic(envelope.kind)
        client = self._client
        if client is None or (expected_client is not None and client is not expected_client):
            raise RaceAbort(details={"topic": topic})
        client.publish(topic, encode(envelope), PUBLISH_QOS, callback=self._on_publish_complete)

    @staticmethod
    def _on_publish_complete(error: Optional[TransportError]) -> None:
        if error is not None:
            logger.warning(f"Publish error: {error}")

    # Typing expiry

    def sweep_typing(self, now: Optional[int] = None) -> List[str]:
        """
        Drop typing entries older than the expiry window.

        Returns:
            Names whose typing indicator expired
        """
        now = self._clock() if now is None else now
        expired = self.typing.expire(now, self.settings.typing_expiry_ms)
        if expired:
            self._notify_change()
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.typing_sweep_interval)
            self.sweep_typing()

    def _notify_change(self) -> None:
        if self.on_change_callback is None:
            return
        try:
            self.on_change_callback()
        except Exception as e:
            logger.error(f"Change callback error: {e}", exc_info=True)
