import pytest

from key20.protocol import (
    CFG_OUT_CHAR_UUID,
    KEY20_SERVICE_UUID,
    NONCE_CHAR_UUID,
    Channel,
    Chunk,
    ErrorCode,
    ProtocolError,
    parse_nonce,
    reassemble,
    split,
)

VALUE = bytes(range(32))


class TestUuids:
    def test_expanded_from_base(self):
        assert KEY20_SERVICE_UUID == "0a9d0001-5ff4-4c58-8a53-627de7cf1faf"
        assert NONCE_CHAR_UUID == "0a9d0002-5ff4-4c58-8a53-627de7cf1faf"
        assert CFG_OUT_CHAR_UUID == "0a9d0005-5ff4-4c58-8a53-627de7cf1faf"

    def test_channel_lookup(self):
        assert Channel.from_uuid("0A9D0003-5FF4-4C58-8A53-627DE7CF1FAF") == Channel.UNLOCK
        assert Channel.from_uuid("0000180f-0000-1000-8000-00805f9b34fb") is None

    def test_max_lengths(self):
        assert Channel.NONCE.max_length == 16
        assert Channel.UNLOCK.max_length == 18
        assert Channel.CFG_IN.max_length == 18
        assert Channel.CFG_OUT.max_length == 18


class TestSplit:
    def test_layout(self):
        chunks = split(VALUE, key_id=3)

        assert chunks == [
            bytes([3, 0]) + VALUE[:16],
            bytes([3, 1]) + VALUE[16:],
        ]

    def test_rejects_wrong_payload_length(self):
        with pytest.raises(ValueError):
            split(VALUE[:31], key_id=0)

    def test_rejects_key_number_out_of_range(self):
        with pytest.raises(ValueError):
            split(VALUE, key_id=256)

    def test_rejects_small_capacity(self):
        with pytest.raises(ValueError):
            split(VALUE, key_id=0, capacity=17)


class TestReassemble:
    def test_in_order(self):
        chunk0, chunk1 = split(VALUE, key_id=2)

        buffer, complete = reassemble(2, 0, chunk0)
        assert not complete
        buffer, complete = reassemble(2, 1, chunk1, buffer)

        assert complete
        assert bytes(buffer) == VALUE

    def test_part1_first_is_violation(self):
        _, chunk1 = split(VALUE, key_id=2)

        with pytest.raises(ProtocolError) as excinfo:
            reassemble(2, 0, chunk1)
        assert excinfo.value.code == ErrorCode.PROTOCOL_VIOLATION

    def test_repeated_part0_is_violation(self):
        chunk0, _ = split(VALUE, key_id=2)
        buffer, _ = reassemble(2, 0, chunk0)

        with pytest.raises(ProtocolError) as excinfo:
            reassemble(2, 1, chunk0, buffer)
        assert excinfo.value.code == ErrorCode.PROTOCOL_VIOLATION

    def test_key_number_mismatch(self):
        chunk0, _ = split(VALUE, key_id=1)

        with pytest.raises(ProtocolError) as excinfo:
            reassemble(2, 0, chunk0)
        assert excinfo.value.code == ErrorCode.PROTOCOL_VIOLATION

    def test_part1_without_buffer(self):
        _, chunk1 = split(VALUE, key_id=2)

        with pytest.raises(ProtocolError) as excinfo:
            reassemble(2, 1, chunk1)
        assert excinfo.value.code == ErrorCode.PROTOCOL_VIOLATION

    @pytest.mark.parametrize("length", [0, 17, 19])
    def test_wrong_length_is_malformed(self, length):
        with pytest.raises(ProtocolError) as excinfo:
            reassemble(0, 0, bytes(length))
        assert excinfo.value.code == ErrorCode.MALFORMED_NOTIFICATION


class TestChunk:
    def test_parse(self):
        chunk = Chunk.parse(bytes([5, 1]) + VALUE[16:])

        assert chunk == Chunk(key_id=5, part=1, payload=VALUE[16:])


class TestNonce:
    def test_valid(self):
        assert parse_nonce(bytearray(range(16))) == bytes(range(16))

    @pytest.mark.parametrize("length", [0, 15, 17, 18])
    def test_wrong_length(self, length):
        with pytest.raises(ProtocolError) as excinfo:
            parse_nonce(bytes(length))
        assert excinfo.value.code == ErrorCode.MALFORMED_NOTIFICATION


class TestErrorCode:
    def test_every_code_has_a_message(self):
        for code in ErrorCode:
            assert not code.to_message().startswith("Unknown error")
