import pytest

from key20 import crypto
from key20.client.events import (
    BluetoothEnabled,
    Connected,
    DeviceSelected,
    Disconnected,
    DisplayChecksum,
    ErrorReported,
    Failure,
    KeyCommitted,
    KeyConfirmed,
    KeyDenied,
    KeyDiscarded,
    NotificationReceived,
    RequestDeviceSelection,
    ServicesDiscovered,
    StartKeyExchange,
    StartUnlock,
    SubscribeAck,
    TaskFinished,
    TaskStarted,
    Track,
    WriteAck,
)
from key20.client.state import Key20StateMachine, KeyExchangeState, UnlockState
from key20.client.store import KeyMaterial
from key20.protocol import (
    CFG_IN_CHAR_UUID,
    CFG_OUT_CHAR_UUID,
    KEY20_SERVICE_UUID,
    NONCE_CHAR_UUID,
    UNLOCK_CHAR_UUID,
    Channel,
    ErrorCode,
    split,
)

ADDRESS = "AA:BB:CC:DD:EE:FF"
SECRET = bytes(range(32))
NONCE = bytes(range(100, 116))
CLIENT_RANDOM = bytes(range(1, 33))
SERVER_RANDOM = bytes(range(50, 82))

ALL_SERVICES = {
    KEY20_SERVICE_UUID: frozenset({NONCE_CHAR_UUID, UNLOCK_CHAR_UUID, CFG_IN_CHAR_UUID, CFG_OUT_CHAR_UUID}),
}


class FakeTransport:
    """Records the requests issued by the state machine."""

    def __init__(self):
        self.calls = []

    def ensure_enabled(self):
        self.calls.append(("ensure_enabled",))

    def connect(self, address):
        self.calls.append(("connect", address))

    def discover_services(self):
        self.calls.append(("discover_services",))

    def subscribe(self, channel):
        self.calls.append(("subscribe", channel))

    def write(self, channel, value):
        self.calls.append(("write", channel, bytes(value)))

    def close(self):
        self.calls.append(("close",))

    async def wait_closed(self):
        pass


class FakeStore:
    def __init__(self):
        self.key_materials = []
        self.addresses = []
        self.read_only = False

    def _check_writable(self):
        if self.read_only:
            raise PermissionError(13, "Permission denied")

    def save_key_material(self, key_material):
        self._check_writable()
        self.key_materials.append(key_material)

    def save_device_address(self, address):
        self._check_writable()
        self.addresses.append(address)


class Harness:
    def __init__(self, key_material=None, device_address=ADDRESS):
        self.transport = FakeTransport()
        self.store = FakeStore()
        self.ui_events = []
        self.posted = []
        self.machine = Key20StateMachine(
            transport=self.transport,
            notify=self.ui_events.append,
            post=self.posted.append,
            key_material=key_material,
            device_address=device_address,
            store=self.store,
            random_source=lambda n: CLIENT_RANDOM[:n],
        )

    def send(self, *events):
        for event in events:
            self.machine.handle_event(event)

    def drain_posted(self):
        while self.posted:
            self.machine.handle_event(self.posted.pop(0))

    def connect(self, start_event, services=ALL_SERVICES):
        """Run the connection prefix up to service discovery."""
        self.send(start_event, BluetoothEnabled())
        self.drain_posted()
        self.send(Connected(), ServicesDiscovered(services=services))

    def finished(self):
        return [e for e in self.ui_events if isinstance(e, TaskFinished)]


@pytest.fixture
def keyed():
    return Harness(key_material=KeyMaterial(key_number=2, secret=SECRET))


def server_key():
    return crypto.generate_key_pair(lambda n: SERVER_RANDOM[:n])


class TestUnlock:
    def test_happy_path(self, keyed):
        keyed.connect(StartUnlock())
        assert keyed.machine.state == UnlockState.WAIT_NONCE

        keyed.send(NotificationReceived(Channel.NONCE, NONCE))
        chunk0, chunk1 = split(crypto.hmac_sha512_256(SECRET, NONCE), 2)
        assert keyed.transport.calls[-1] == ("write", Channel.UNLOCK, chunk0)

        keyed.send(WriteAck(Channel.UNLOCK))
        assert keyed.transport.calls[-1] == ("write", Channel.UNLOCK, chunk1)

        keyed.send(WriteAck(Channel.UNLOCK))
        assert keyed.transport.calls == [
            ("ensure_enabled",),
            ("connect", ADDRESS),
            ("discover_services",),
            ("subscribe", Channel.NONCE),
            ("write", Channel.UNLOCK, chunk0),
            ("write", Channel.UNLOCK, chunk1),
            ("close",),
        ]
        assert keyed.ui_events == [
            TaskStarted(Track.UNLOCK),
            TaskFinished(Track.UNLOCK, success=True),
        ]
        assert keyed.machine.is_idle

    def test_nonce_subscription_ack_is_not_awaited(self, keyed):
        keyed.connect(StartUnlock())

        keyed.send(NotificationReceived(Channel.NONCE, NONCE))
        assert keyed.machine.state == UnlockState.WAIT_HMAC_PART1_ACK

        calls = list(keyed.transport.calls)
        keyed.send(SubscribeAck(Channel.NONCE))

        assert keyed.machine.state == UnlockState.WAIT_HMAC_PART1_ACK
        assert keyed.transport.calls == calls

    def test_malformed_nonce(self, keyed):
        keyed.connect(StartUnlock())

        keyed.send(NotificationReceived(Channel.NONCE, NONCE[:15]))

        assert keyed.finished() == [
            TaskFinished(Track.UNLOCK, success=False, error=ErrorCode.MALFORMED_NOTIFICATION),
        ]
        assert keyed.transport.calls[-1] == ("close",)
        assert keyed.machine.is_idle

    def test_disconnect_mid_task(self, keyed):
        keyed.connect(StartUnlock())
        keyed.send(NotificationReceived(Channel.NONCE, NONCE))

        keyed.send(Disconnected())

        assert keyed.finished() == [
            TaskFinished(Track.UNLOCK, success=False, error=ErrorCode.WRITE_FAILED),
        ]
        assert keyed.machine.is_idle

        calls, ui_events = list(keyed.transport.calls), list(keyed.ui_events)
        keyed.send(WriteAck(Channel.UNLOCK), NotificationReceived(Channel.NONCE, NONCE))
        assert keyed.transport.calls == calls
        assert keyed.ui_events == ui_events

    def test_without_key(self):
        harness = Harness()

        harness.send(StartUnlock())

        assert harness.ui_events == [ErrorReported(ErrorCode.NO_KEY_CONFIGURED)]
        assert harness.transport.calls == []

    def test_connection_failure(self, keyed):
        keyed.send(StartUnlock(), BluetoothEnabled())
        keyed.drain_posted()

        keyed.send(Failure("timeout"))

        assert keyed.finished() == [
            TaskFinished(Track.UNLOCK, success=False, error=ErrorCode.CONNECTION_FAILED),
        ]

    def test_bluetooth_unavailable(self, keyed):
        keyed.send(StartUnlock(), Failure("no adapter"))

        assert keyed.finished() == [
            TaskFinished(Track.UNLOCK, success=False, error=ErrorCode.TRANSPORT_UNAVAILABLE),
        ]
        assert ("connect", ADDRESS) not in keyed.transport.calls


class TestServices:
    def test_missing_service(self, keyed):
        keyed.connect(StartUnlock(), services={"0000180f-0000-1000-8000-00805f9b34fb": frozenset()})

        assert keyed.finished() == [
            TaskFinished(Track.UNLOCK, success=False, error=ErrorCode.REQUIRED_SERVICE_MISSING),
        ]

    def test_missing_characteristic(self, keyed):
        services = {KEY20_SERVICE_UUID: frozenset({NONCE_CHAR_UUID, CFG_IN_CHAR_UUID, CFG_OUT_CHAR_UUID})}

        keyed.connect(StartUnlock(), services=services)

        assert keyed.finished() == [
            TaskFinished(Track.UNLOCK, success=False, error=ErrorCode.REQUIRED_CHARACTERISTIC_MISSING),
        ]
        assert ("subscribe", Channel.NONCE) not in keyed.transport.calls

    def test_key_exchange_needs_only_cfg_characteristics(self):
        harness = Harness()
        services = {KEY20_SERVICE_UUID: frozenset({CFG_IN_CHAR_UUID, CFG_OUT_CHAR_UUID})}

        harness.connect(StartKeyExchange(0), services=services)

        assert harness.machine.state == KeyExchangeState.WAIT_CFG_OUT_SUBSCRIBE_ACK


class TestDeviceSelection:
    def test_requests_selection_without_address(self):
        harness = Harness(device_address=None)

        harness.send(StartKeyExchange(0), BluetoothEnabled())

        assert harness.ui_events[-1] == RequestDeviceSelection()
        assert harness.posted == []

        harness.send(DeviceSelected("11:22:33:44:55:66"))

        assert harness.transport.calls[-1] == ("connect", "11:22:33:44:55:66")
        assert harness.store.addresses == ["11:22:33:44:55:66"]
        assert harness.machine.device_address == "11:22:33:44:55:66"

    def test_selection_failure(self):
        harness = Harness(device_address=None)

        harness.send(StartKeyExchange(0), BluetoothEnabled(), Failure("no lock selected"))

        assert harness.finished() == [
            TaskFinished(Track.KEY_EXCHANGE, success=False, error=ErrorCode.NO_ENDPOINT_SELECTED),
        ]

    def test_unstored_address_does_not_stop_the_task(self):
        harness = Harness(device_address=None)
        harness.store.read_only = True

        harness.send(StartKeyExchange(0), BluetoothEnabled(), DeviceSelected("11:22:33:44:55:66"))

        assert harness.transport.calls[-1] == ("connect", "11:22:33:44:55:66")
        assert harness.machine.state == KeyExchangeState.WAIT_CONNECTED
        assert harness.machine.device_address == "11:22:33:44:55:66"
        assert harness.finished() == []


class TestExclusivity:
    def test_second_start_is_rejected(self, keyed):
        keyed.connect(StartUnlock())
        state = keyed.machine.state

        keyed.send(StartKeyExchange(1))
        keyed.send(StartUnlock())

        assert keyed.ui_events[-2:] == [
            ErrorReported(ErrorCode.TASK_ALREADY_IN_PROGRESS),
            ErrorReported(ErrorCode.TASK_ALREADY_IN_PROGRESS),
        ]
        assert keyed.machine.track == Track.UNLOCK
        assert keyed.machine.state == state

    def test_invalid_key_number(self):
        harness = Harness()

        harness.send(StartKeyExchange(256))

        assert harness.ui_events == [ErrorReported(ErrorCode.PROTOCOL_VIOLATION)]
        assert harness.machine.is_idle


class TestKeyExchange:
    def run_exchange(self, harness, key_number=1):
        harness.connect(StartKeyExchange(key_number))
        assert harness.transport.calls[-1] == ("subscribe", Channel.CFG_OUT)

        harness.send(SubscribeAck(Channel.CFG_OUT))
        _, client_public = crypto.generate_key_pair(lambda n: CLIENT_RANDOM[:n])
        chunk0, chunk1 = split(client_public, key_number)
        assert harness.transport.calls[-1] == ("write", Channel.CFG_IN, chunk0)

        harness.send(WriteAck(Channel.CFG_IN))
        assert harness.transport.calls[-1] == ("write", Channel.CFG_IN, chunk1)

        harness.send(WriteAck(Channel.CFG_IN))
        assert harness.machine.state == KeyExchangeState.WAIT_SERVER_KEY_PART1

        server_private, server_public = server_key()
        for chunk in split(server_public, key_number):
            harness.send(NotificationReceived(Channel.CFG_OUT, chunk))

        return crypto.derive_shared_secret(server_private, client_public)

    def test_happy_path(self):
        harness = Harness()

        shared_secret = self.run_exchange(harness)

        checksums = [e for e in harness.ui_events if isinstance(e, DisplayChecksum)]
        assert checksums == [DisplayChecksum(crypto.secret_checksum(shared_secret))]
        assert harness.finished() == [TaskFinished(Track.KEY_EXCHANGE, success=True)]
        assert harness.transport.calls[-1] == ("close",)
        assert harness.machine.pending_key.secret == shared_secret
        assert not harness.machine.key_material.is_valid

    def test_cfg_out_subscription_is_awaited(self):
        harness = Harness()
        harness.connect(StartKeyExchange(1))
        calls = list(harness.transport.calls)

        harness.send(WriteAck(Channel.CFG_IN))

        assert harness.machine.state == KeyExchangeState.WAIT_CFG_OUT_SUBSCRIBE_ACK
        assert harness.transport.calls == calls

    def test_confirm_commits_and_persists(self):
        harness = Harness()
        shared_secret = self.run_exchange(harness)

        harness.send(KeyConfirmed())

        assert harness.ui_events[-1] == KeyCommitted(1)
        assert harness.machine.key_material == KeyMaterial(key_number=1, secret=shared_secret)
        assert harness.store.key_materials == [KeyMaterial(key_number=1, secret=shared_secret)]
        assert harness.machine.pending_key is None

    def test_confirm_with_unwritable_store(self):
        harness = Harness()
        shared_secret = self.run_exchange(harness)
        harness.store.read_only = True

        harness.send(KeyConfirmed())

        assert harness.ui_events[-1] == ErrorReported(ErrorCode.KEY_STORAGE_FAILED)
        assert not harness.machine.key_material.is_valid
        assert harness.machine.pending_key.secret == shared_secret

        harness.store.read_only = False
        harness.send(KeyConfirmed())

        assert harness.ui_events[-1] == KeyCommitted(1)
        assert harness.store.key_materials == [KeyMaterial(key_number=1, secret=shared_secret)]

    def test_deny_discards(self, keyed):
        self.run_exchange(keyed)

        keyed.send(KeyDenied())

        assert keyed.ui_events[-1] == KeyDiscarded(1)
        assert keyed.machine.key_material == KeyMaterial(key_number=2, secret=SECRET)
        assert keyed.store.key_materials == []

        keyed.send(KeyConfirmed())
        assert keyed.ui_events[-1] == ErrorReported(ErrorCode.NO_SHARED_SECRET_TO_CONFIRM)

    def test_stale_confirmation(self):
        harness = Harness()

        harness.send(KeyConfirmed())

        assert harness.ui_events == [ErrorReported(ErrorCode.NO_SHARED_SECRET_TO_CONFIRM)]
        assert harness.store.key_materials == []

    def test_new_exchange_drops_pending_key(self):
        harness = Harness()
        self.run_exchange(harness)

        harness.send(StartKeyExchange(3), Failure("no adapter"))
        harness.send(KeyConfirmed())

        assert harness.ui_events[-1] == ErrorReported(ErrorCode.NO_SHARED_SECRET_TO_CONFIRM)
        assert not harness.machine.key_material.is_valid

    def test_confirmation_during_task_does_not_commit(self):
        harness = Harness()
        harness.connect(StartKeyExchange(1))

        harness.send(KeyConfirmed())

        assert not any(isinstance(e, KeyCommitted) for e in harness.ui_events)
        assert harness.machine.state == KeyExchangeState.WAIT_CFG_OUT_SUBSCRIBE_ACK

    def prepare_server_key(self, harness, key_number=1):
        harness.connect(StartKeyExchange(key_number))
        harness.send(SubscribeAck(Channel.CFG_OUT), WriteAck(Channel.CFG_IN), WriteAck(Channel.CFG_IN))
        assert harness.machine.state == KeyExchangeState.WAIT_SERVER_KEY_PART1
        return split(server_key()[1], key_number)

    def test_server_key_number_mismatch(self):
        harness = Harness()
        self.prepare_server_key(harness, key_number=1)
        wrong0, _ = split(server_key()[1], 2)

        harness.send(NotificationReceived(Channel.CFG_OUT, wrong0))

        assert harness.finished() == [
            TaskFinished(Track.KEY_EXCHANGE, success=False, error=ErrorCode.PROTOCOL_VIOLATION),
        ]
        assert harness.machine.pending_key is None

    def test_server_key_out_of_order(self):
        harness = Harness()
        _, chunk1 = self.prepare_server_key(harness)

        harness.send(NotificationReceived(Channel.CFG_OUT, chunk1))

        assert harness.finished() == [
            TaskFinished(Track.KEY_EXCHANGE, success=False, error=ErrorCode.PROTOCOL_VIOLATION),
        ]

    def test_server_key_part0_twice(self):
        harness = Harness()
        chunk0, _ = self.prepare_server_key(harness)

        harness.send(NotificationReceived(Channel.CFG_OUT, chunk0))
        harness.send(NotificationReceived(Channel.CFG_OUT, chunk0))

        assert harness.finished() == [
            TaskFinished(Track.KEY_EXCHANGE, success=False, error=ErrorCode.PROTOCOL_VIOLATION),
        ]
        assert not any(isinstance(e, DisplayChecksum) for e in harness.ui_events)
