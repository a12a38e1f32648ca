#!/usr/bin/env python3
"""
Test suite for the block cipher verification harness.
Covers the fragmentation planner, the reference token, both drivers, the
reporter, the suite runner and the command line.
"""

import pytest
import os
import sys
import logging
from unittest.mock import patch

from Crypto.Cipher import AES, DES
from Crypto.Util.Padding import pad

# Add the parent directory to the path to import the harness
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cipherverify import (
    Accumulator, Application, ChunkDirective, ChunkKind, CLIHandler,
    CollaboratorError, ConfigurationError, Direction, FragmentationPlanner,
    GenerationSpec, GENERATED_TEST_SUITES, Outcome, PolicyRejected,
    PublishedTestSuite, PUBLISHED_TEST_SUITES, RoundTripDriver, RoundTripMode,
    RunConfig, SoftTokenSession, StreamState, StreamingVerifier, SuiteRunner,
    KnownAnswerVector, Verdict, VerdictReporter, generate_pattern,
    BIG_REQUEST, CHUNK_EMPTY, CHUNK_NULL,
)


AES_KEY = bytes.fromhex("2b7e151628aed2a6abf7158809cf4f3c")
AES_IV = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


class RecordingSession(SoftTokenSession):
    """Reference token that records every data call and its output."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []
        self.outputs = []
        self.destroyed = []
        self.direction = None

    def init_cipher(self, direction, mechanism, params, key):
        super().init_cipher(direction, mechanism, params, key)
        self.direction = direction

    def update(self, fragment, dest_capacity):
        output = super().update(fragment, dest_capacity)
        self.calls.append(('update', self.direction, fragment, dest_capacity))
        self.outputs.append(output)
        return output

    def final(self, dest_capacity):
        output = super().final(dest_capacity)
        self.calls.append(('final', self.direction, None, dest_capacity))
        self.outputs.append(output)
        return output

    def one_shot(self, data, dest_capacity):
        output = super().one_shot(data, dest_capacity)
        self.calls.append(('one_shot', self.direction, data, dest_capacity))
        self.outputs.append(output)
        return output

    def destroy_key(self, handle):
        self.destroyed.append(handle)
        super().destroy_key(handle)


class CorruptingSession(SoftTokenSession):
    """Flips the first byte of every non-empty output in the given direction."""

    def __init__(self, only=None, **kwargs):
        super().__init__(**kwargs)
        self.only = only
        self.direction = None

    def init_cipher(self, direction, mechanism, params, key):
        super().init_cipher(direction, mechanism, params, key)
        self.direction = direction

    def _corrupt(self, output):
        if not output or (self.only is not None and self.direction is not self.only):
            return output
        return bytes([output[0] ^ 0xFF]) + output[1:]

    def update(self, fragment, dest_capacity):
        return self._corrupt(super().update(fragment, dest_capacity))

    def one_shot(self, data, dest_capacity):
        return self._corrupt(super().one_shot(data, dest_capacity))


class ShortSession(SoftTokenSession):
    """Loses the last byte of every non-empty update."""

    def update(self, fragment, dest_capacity):
        return super().update(fragment, dest_capacity)[:-1]


class NullIntolerantSession(SoftTokenSession):
    """Rejects an absent fragment, as a token that dereferences it would."""

    def update(self, fragment, dest_capacity):
        if fragment is None:
            raise CollaboratorError("C_EncryptUpdate", "CKR_ARGUMENTS_BAD")
        return super().update(fragment, dest_capacity)


class OverflowingSession(SoftTokenSession):
    """Returns more bytes than the capacity it was given."""

    def final(self, dest_capacity):
        super().final(dest_capacity)
        return b'\x00' * (dest_capacity + 1)


class FailingDestroySession(SoftTokenSession):
    def destroy_key(self, handle):
        raise CollaboratorError("C_DestroyObject", "CKR_DEVICE_ERROR")


class FailingUnwrapSession(RecordingSession):
    def unwrap_key(self, mechanism, params, unwrapping_key, wrapped, template):
        raise CollaboratorError("C_UnwrapKey", "CKR_WRAPPED_KEY_INVALID")


def des_suite(vector, mechanism="DES_ECB"):
    return PublishedTestSuite("DES_TEST", mechanism, (vector,))


def total_published_cases(suites):
    return sum(4 * len(s.vectors) for s in suites)


class TestChunkDirective:
    """Test cases for decoding chunk plan entries."""

    def test_null(self):
        assert ChunkDirective.from_int(CHUNK_NULL).kind is ChunkKind.NULL

    def test_empty(self):
        assert ChunkDirective.from_int(CHUNK_EMPTY).kind is ChunkKind.EMPTY

    def test_sized(self):
        directive = ChunkDirective.from_int(5)
        assert directive.kind is ChunkKind.SIZED
        assert directive.length == 5

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError, match="Invalid chunk directive"):
            ChunkDirective.from_int(-2)


class TestFragmentationPlanner:
    """Test cases for turning chunk plans into fragments."""

    def test_sized_null_sized(self):
        """The 3 / null / 5 plan over an eight-byte source."""
        planner = FragmentationPlanner([3, CHUNK_NULL, 5])
        fragments = list(planner.fragments(b"01234567"))
        assert fragments == [b"012", None, b"34567"]

    def test_empty_directive_yields_present_empty_fragment(self):
        fragments = list(FragmentationPlanner([CHUNK_EMPTY, 2]).fragments(b"ab"))
        assert fragments[0] == b''
        assert fragments[0] is not None

    def test_no_plan(self):
        planner = FragmentationPlanner([])
        assert not planner.has_plan
        with pytest.raises(ConfigurationError):
            planner.fragments(b"abc")

    def test_overrun_fails_before_first_fragment(self):
        planner = FragmentationPlanner([3, 6])
        with pytest.raises(ConfigurationError, match="overruns"):
            planner.fragments(b"01234567")

    def test_underrun_is_rejected(self):
        with pytest.raises(ConfigurationError, match="unfed"):
            FragmentationPlanner([3]).fragments(b"01234567")

    @pytest.mark.parametrize("plan", [
        [8],
        [1, 1, 1, 1, 1, 1, 1, 1],
        [CHUNK_NULL, CHUNK_EMPTY, 8, CHUNK_NULL],
        [7, CHUNK_EMPTY, 1],
        [2, CHUNK_NULL, 2, CHUNK_EMPTY, 4],
    ])
    def test_fragments_reassemble_source(self, plan):
        source = b"ABCDEFGH"
        fragments = FragmentationPlanner(plan).fragments(source)
        assert b''.join(f for f in fragments if f is not None) == source

    def test_fragments_are_lazy(self):
        iterator = FragmentationPlanner([2, 2]).fragments(b"abcd")
        assert next(iterator) == b"ab"
        assert next(iterator) == b"cd"
        with pytest.raises(StopIteration):
            next(iterator)


class TestAccumulator:
    """Test cases for the destination buffer and stream cursors."""

    def test_capacity_invariant_holds(self):
        acc = Accumulator(32)
        state = acc.reset()
        for chunk in (b'', b'12345678', b'', b'abcdefgh'):
            acc.append(state, chunk, "C_EncryptUpdate")
            assert state.dest_cursor + state.dest_capacity_remaining == 32
        assert acc.contents(state) == b'12345678abcdefgh'

    def test_reset_zeroes_buffer(self):
        acc = Accumulator(16)
        state = acc.reset()
        acc.append(state, b'\xff' * 16, "C_EncryptUpdate")
        state = acc.reset()
        assert state.dest_cursor == 0
        assert state.dest_capacity_remaining == 16
        assert acc._buffer == bytearray(16)

    def test_output_past_capacity(self):
        acc = Accumulator(8)
        state = acc.reset()
        with pytest.raises(CollaboratorError, match="C_EncryptFinal"):
            acc.append(state, b'\x00' * 9, "C_EncryptFinal")

    def test_source_cursor_cannot_pass_end(self):
        state = StreamState(16)
        state.consume(b'abcd', 4)
        state.consume(None, 4)
        assert state.source_cursor == 4
        with pytest.raises(ConfigurationError):
            state.consume(b'e', 4)


class TestSoftTokenSession:
    """Test cases for the reference token's streaming contract."""

    def test_partial_blocks_are_buffered(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        token.init_cipher(Direction.ENCRYPT, 'DES_ECB', b'', key)
        assert token.update(b"012", 100) == b''
        assert token.update(None, 100) == b''
        assert token.update(b'', 100) == b''
        block = token.update(b"34567", 100)
        assert block == DES.new(des_key, DES.MODE_ECB).encrypt(b"01234567")
        assert token.final(100) == b''

    def test_padded_decrypt_holds_back_last_block(self, token):
        key = token.create_secret_key('AES', AES_KEY)
        plaintext = bytes(range(32))
        token.init_cipher(Direction.ENCRYPT, 'AES_CBC_PAD', AES_IV, key)
        ciphertext = token.one_shot(plaintext, 64)
        assert len(ciphertext) == 48

        token.init_cipher(Direction.DECRYPT, 'AES_CBC_PAD', AES_IV, key)
        assert token.update(ciphertext, 64) == plaintext
        assert token.final(64) == b''

    def test_padded_encrypt_flushes_on_final(self, token):
        key = token.create_secret_key('AES', AES_KEY)
        token.init_cipher(Direction.ENCRYPT, 'AES_CBC_PAD', AES_IV, key)
        assert token.update(b"short", 64) == b''
        expected = AES.new(AES_KEY, AES.MODE_CBC, iv=AES_IV).encrypt(pad(b"short", 16))
        assert token.final(64) == expected

    def test_final_with_partial_block(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        token.init_cipher(Direction.ENCRYPT, 'DES_ECB', b'', key)
        token.update(b"abc", 100)
        with pytest.raises(CollaboratorError) as exc_info:
            token.final(100)
        assert exc_info.value.rv == "CKR_DATA_LEN_RANGE"
        assert str(exc_info.value) == "C_EncryptFinal rc=CKR_DATA_LEN_RANGE"

    def test_buffer_too_small_keeps_state(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        token.init_cipher(Direction.ENCRYPT, 'DES_ECB', b'', key)
        with pytest.raises(CollaboratorError, match="CKR_BUFFER_TOO_SMALL"):
            token.update(b"01234567", 4)
        assert token.update(b"01234567", 8) == \
            DES.new(des_key, DES.MODE_ECB).encrypt(b"01234567")

    def test_update_without_init(self, token):
        with pytest.raises(CollaboratorError, match="CKR_OPERATION_NOT_INITIALIZED"):
            token.update(b"data", 100)

    def test_final_ends_operation(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        token.init_cipher(Direction.ENCRYPT, 'DES_ECB', b'', key)
        token.final(100)
        with pytest.raises(CollaboratorError, match="CKR_OPERATION_NOT_INITIALIZED"):
            token.final(100)

    def test_policy_rejects_key_import(self, des_key):
        session = SoftTokenSession(disallowed_key_types=['DES'])
        with pytest.raises(PolicyRejected) as exc_info:
            session.create_secret_key('DES', des_key)
        assert exc_info.value.rv == "CKR_POLICY_VIOLATION"
        assert session.object_count == 0

    def test_key_type_inconsistent(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        with pytest.raises(CollaboratorError, match="CKR_KEY_TYPE_INCONSISTENT"):
            token.init_cipher(Direction.ENCRYPT, 'AES_ECB', b'', key)

    def test_cbc_requires_iv(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        with pytest.raises(CollaboratorError, match="CKR_MECHANISM_PARAM_INVALID"):
            token.init_cipher(Direction.ENCRYPT, 'DES_CBC', b'', key)

    def test_invalid_key_length(self, token):
        with pytest.raises(CollaboratorError, match="CKR_KEY_SIZE_RANGE"):
            token.create_secret_key('AES', b'\x00' * 15)

    def test_unsupported_mechanism(self):
        session = SoftTokenSession(supported_mechanisms=['AES_ECB'])
        assert session.mechanism_supported('AES_ECB')
        assert not session.mechanism_supported('DES_ECB')
        assert not session.wrap_supported('DES_ECB')

    def test_wrap_unwrap_gives_equivalent_key(self, token):
        data_key = token.generate_key('AES_KEY_GEN')
        wrapping_key = token.generate_key('AES_KEY_GEN')
        wrapped = token.wrap_key('AES_CBC_PAD', AES_IV, wrapping_key, data_key, 128)
        copy = token.unwrap_key('AES_CBC_PAD', AES_IV, wrapping_key, wrapped,
                                {'key_type': 'AES'})

        outputs = []
        for key in (data_key, copy):
            token.init_cipher(Direction.ENCRYPT, 'AES_ECB', b'', key)
            outputs.append(token.one_shot(b"sixteen byte msg", 16))
        assert outputs[0] == outputs[1]

    def test_generated_des3_key_is_usable(self, token):
        key = token.generate_key('DES3_KEY_GEN')
        token.init_cipher(Direction.ENCRYPT, 'DES3_CBC', b'\x00' * 8, key)
        assert len(token.one_shot(b'\x00' * 16, 16)) == 16

    def test_generated_two_key_des3(self, token):
        key = token.generate_key('DES3_KEY_GEN', 16)
        token.init_cipher(Direction.ENCRYPT, 'DES3_ECB', b'', key)
        assert len(token.one_shot(b'\x00' * 8, 8)) == 8

    @pytest.mark.parametrize("keygen,length", [
        ('DES3_KEY_GEN', 8),
        ('DES3_KEY_GEN', 32),
        ('DES_KEY_GEN', 16),
        ('AES_KEY_GEN', 0),
        ('AES_KEY_GEN', 20),
    ])
    def test_generate_key_length_out_of_range(self, token, keygen, length):
        with pytest.raises(CollaboratorError) as exc_info:
            token.generate_key(keygen, length)
        assert str(exc_info.value) == "C_GenerateKey rc=CKR_KEY_SIZE_RANGE"
        assert token.object_count == 0

    def test_padded_one_shot_decrypt_of_nothing(self, token):
        key = token.create_secret_key('AES', AES_KEY)
        token.init_cipher(Direction.DECRYPT, 'AES_CBC_PAD', AES_IV, key)
        with pytest.raises(CollaboratorError) as one_shot_error:
            token.one_shot(b'', 64)

        token.init_cipher(Direction.DECRYPT, 'AES_CBC_PAD', AES_IV, key)
        with pytest.raises(CollaboratorError) as final_error:
            token.final(64)
        assert one_shot_error.value.rv == final_error.value.rv == \
            "CKR_ENCRYPTED_DATA_LEN_RANGE"

    def test_one_shot_misaligned_ends_operation(self, token, des_key):
        key = token.create_secret_key('DES', des_key)
        token.init_cipher(Direction.DECRYPT, 'DES_CBC_PAD', b'\x00' * 8, key)
        with pytest.raises(CollaboratorError, match="CKR_ENCRYPTED_DATA_LEN_RANGE"):
            token.one_shot(b"abc", 64)
        with pytest.raises(CollaboratorError, match="CKR_OPERATION_NOT_INITIALIZED"):
            token.final(64)

    def test_destroy_unknown_handle(self, token):
        with pytest.raises(CollaboratorError, match="CKR_KEY_HANDLE_INVALID"):
            token.destroy_key(42)

    def test_close_reports_leaked_objects(self, des_key, caplog):
        session = SoftTokenSession()
        session.open()
        session.create_secret_key('DES', des_key)
        with caplog.at_level(logging.WARNING, logger="cipherverify"):
            session.close()
        assert "1 leaked key object" in caplog.text
        assert session.object_count == 0


class TestStreamingVerifier:
    """Test cases for the streaming verification driver."""

    @pytest.mark.parametrize("suite", PUBLISHED_TEST_SUITES, ids=lambda s: s.name)
    @pytest.mark.parametrize("direction", list(Direction), ids=lambda d: d.value)
    def test_catalog_vectors_pass(self, suite, direction):
        with SoftTokenSession() as session:
            verifier = StreamingVerifier(session)
            for i in range(len(suite.vectors)):
                single = verifier.run_single_verification(suite, i, direction)
                multi = verifier.run_streaming_verification(suite, i, direction)
                assert single.passed, single.detail
                assert multi.passed, multi.detail
            assert session.object_count == 0

    def test_sample_vector_calls(self, sample_vector):
        """3 / null / 5: two silent updates, one block, then an empty final."""
        session = RecordingSession()
        verifier = StreamingVerifier(session)
        verdict = verifier.run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)

        assert verdict.passed
        assert verdict.actual_len == 8
        assert [c[2] for c in session.calls] == [b"012", None, b"34567", None]
        assert [c[3] for c in session.calls] == [BIG_REQUEST] * 3 + [BIG_REQUEST - 8]
        assert session.outputs == [b'', b'', sample_vector.ciphertext, b'']

    def test_streaming_matches_one_shot(self, sample_vector):
        session = RecordingSession()
        verifier = StreamingVerifier(session)
        suite = des_suite(sample_vector)
        verifier.run_streaming_verification(suite, 0, Direction.ENCRYPT)
        streamed = b''.join(session.outputs)
        session.outputs.clear()
        verifier.run_single_verification(suite, 0, Direction.ENCRYPT)
        assert b''.join(session.outputs) == streamed

    def test_null_and_empty_are_equivalent(self, des_key):
        source = bytes(range(24))
        expected = DES.new(des_key, DES.MODE_ECB).encrypt(source)
        results = []
        for filler in (CHUNK_NULL, CHUNK_EMPTY):
            vector = KnownAnswerVector(key=des_key, plaintext=source, ciphertext=expected,
                                       chunks=(5, filler, 11, filler, filler, 8))
            session = RecordingSession()
            verdict = StreamingVerifier(session).run_streaming_verification(
                des_suite(vector), 0, Direction.ENCRYPT)
            assert verdict.passed
            results.append(session.outputs)
        assert results[0] == results[1]

    def test_no_plan_feeds_whole_source(self, sample_vector):
        vector = KnownAnswerVector(key=sample_vector.key, plaintext=sample_vector.plaintext,
                                   ciphertext=sample_vector.ciphertext)
        session = RecordingSession()
        verdict = StreamingVerifier(session).run_streaming_verification(
            des_suite(vector), 0, Direction.DECRYPT)
        assert verdict.passed
        assert session.calls[0] == ('update', Direction.DECRYPT,
                                    vector.ciphertext, BIG_REQUEST)
        assert session.calls[1][0] == 'final'

    def test_padded_multipart_decrypt(self):
        plaintext = b"twenty bytes of text"
        ciphertext = AES.new(AES_KEY, AES.MODE_CBC, iv=AES_IV).encrypt(pad(plaintext, 16))
        vector = KnownAnswerVector(key=AES_KEY, iv=AES_IV, plaintext=plaintext,
                                   ciphertext=ciphertext, chunks=(5, CHUNK_NULL, 27))
        suite = PublishedTestSuite("AES_CBC_PAD", "AES_CBC_PAD", (vector,))
        with SoftTokenSession() as session:
            verdict = StreamingVerifier(session).run_streaming_verification(
                suite, 0, Direction.DECRYPT)
        assert verdict.passed, verdict.detail
        assert verdict.actual_len == 20

    def test_wrong_bytes_fail(self, sample_vector):
        verdict = StreamingVerifier(CorruptingSession()).run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.FAIL
        assert verdict.expected_len == verdict.actual_len == 8
        assert "does not match" in verdict.detail

    def test_wrong_length_fails(self):
        suite = PUBLISHED_TEST_SUITES[0]
        verdict = StreamingVerifier(ShortSession()).run_streaming_verification(
            suite, 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.FAIL
        assert verdict.expected_len == 24
        assert verdict.actual_len < 24
        assert "expected length=24" in verdict.detail

    def test_null_fragment_rejected_is_error(self, sample_vector):
        session = NullIntolerantSession()
        verdict = StreamingVerifier(session).run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.ERROR
        assert verdict.detail == "C_EncryptUpdate rc=CKR_ARGUMENTS_BAD"
        assert session.object_count == 0

    def test_output_past_capacity_is_error(self, sample_vector):
        session = OverflowingSession()
        verdict = StreamingVerifier(session).run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.ERROR
        assert "C_EncryptFinal" in verdict.detail
        assert session.object_count == 0

    def test_policy_rejection_is_skip(self, sample_vector):
        session = SoftTokenSession(disallowed_key_types=['DES'])
        verdict = StreamingVerifier(session).run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.SKIP
        assert verdict.detail == "DES key import is not allowed by policy"

    def test_unsupported_mechanism_is_skip(self, sample_vector):
        session = SoftTokenSession(supported_mechanisms=['AES_ECB'])
        verdict = StreamingVerifier(session).run_single_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.SKIP

    def test_init_failure_is_error(self, sample_vector):
        session = SoftTokenSession()
        verdict = StreamingVerifier(session).run_streaming_verification(
            des_suite(sample_vector, mechanism="DES_CBC"), 0, Direction.ENCRYPT)
        assert verdict.outcome is Outcome.ERROR
        assert verdict.detail == "C_EncryptInit rc=CKR_MECHANISM_PARAM_INVALID"
        assert session.object_count == 0

    def test_malformed_plan_fails_before_token_calls(self, sample_vector):
        vector = KnownAnswerVector(key=sample_vector.key, plaintext=sample_vector.plaintext,
                                   ciphertext=sample_vector.ciphertext, chunks=(3, 9))
        session = RecordingSession()
        with pytest.raises(ConfigurationError):
            StreamingVerifier(session).run_streaming_verification(
                des_suite(vector), 0, Direction.ENCRYPT)
        assert session.calls == []
        assert session._next_handle == 1

    def test_oversized_vector(self):
        suite = PUBLISHED_TEST_SUITES[0]
        verifier = StreamingVerifier(SoftTokenSession(), RunConfig(max_request_size=16))
        with pytest.raises(ConfigurationError, match="limit is 16"):
            verifier.run_single_verification(suite, 0, Direction.ENCRYPT)

    def test_cleanup_failure_does_not_mask_verdict(self, sample_vector):
        verdict = StreamingVerifier(FailingDestroySession()).run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT)
        assert verdict.passed
        assert verdict.cleanup_errors == ["C_DestroyObject rc=CKR_DEVICE_ERROR"]

    def test_buffer_reused_between_cases(self, sample_vector):
        """A long vector followed by a short one leaves no stale bytes behind."""
        session = SoftTokenSession()
        verifier = StreamingVerifier(session)
        assert verifier.run_streaming_verification(
            PUBLISHED_TEST_SUITES[2], 0, Direction.ENCRYPT).passed
        assert verifier.run_streaming_verification(
            des_suite(sample_vector), 0, Direction.ENCRYPT).passed


class TestRoundTripDriver:
    """Test cases for generated round trips."""

    @pytest.mark.parametrize("spec", GENERATED_TEST_SUITES, ids=lambda s: s.name)
    @pytest.mark.parametrize("mode", list(RoundTripMode), ids=lambda m: m.value)
    def test_catalog_round_trips_pass(self, spec, mode):
        with SoftTokenSession() as session:
            verdict = RoundTripDriver(session).run_round_trip(mode, spec)
            assert verdict.passed, verdict.detail
            assert verdict.actual_len == BIG_REQUEST
            assert session.object_count == 0

    def test_fixed_stride_call_pattern(self):
        """64 bytes at stride 8: eight updates and one final each way."""
        session = RecordingSession()
        spec = GenerationSpec("DES_ECB", "DES_ECB", "DES_KEY_GEN", data_length=64)
        verdict = RoundTripDriver(session).run_round_trip(RoundTripMode.MULTIPART, spec)
        assert verdict.passed
        assert verdict.actual_len == 64

        for direction in Direction:
            calls = [c for c in session.calls if c[1] is direction]
            assert [c[0] for c in calls] == ['update'] * 8 + ['final']
            assert all(len(c[2]) == 8 for c in calls[:8])

    def test_remaining_capacity_tracks_bytes_written(self):
        session = RecordingSession()
        driver = RoundTripDriver(session)
        spec = GenerationSpec("AES_CBC_PAD", "AES_CBC_PAD", "AES_KEY_GEN",
                              iv=AES_IV, data_length=100, stride=7)
        assert driver.run_round_trip(RoundTripMode.MULTIPART, spec).passed

        for direction in Direction:
            written = 0
            for call, output in zip(session.calls, session.outputs):
                if call[1] is not direction:
                    continue
                assert call[3] == driver.crypt.capacity - written
                written += len(output)

    def test_wrap_unwrap_destroys_three_keys(self):
        session = RecordingSession()
        spec = GenerationSpec("DES3_CBC", "DES3_CBC", "DES3_KEY_GEN", iv=b'\x01' * 8)
        verdict = RoundTripDriver(session).run_round_trip(RoundTripMode.WRAP_UNWRAP, spec)
        assert verdict.passed
        assert len(session.destroyed) == 3
        assert session.object_count == 0

    def test_wrap_unwrap_cleans_up_after_error(self):
        session = FailingUnwrapSession()
        spec = GenerationSpec("AES_ECB", "AES_ECB", "AES_KEY_GEN")
        verdict = RoundTripDriver(session).run_round_trip(RoundTripMode.WRAP_UNWRAP, spec)
        assert verdict.outcome is Outcome.ERROR
        assert verdict.detail == "C_UnwrapKey rc=CKR_WRAPPED_KEY_INVALID"
        assert len(session.destroyed) == 2
        assert session.object_count == 0

    def test_corrupted_decrypt_fails(self):
        session = CorruptingSession(only=Direction.DECRYPT)
        spec = GenerationSpec("AES_ECB", "AES_ECB", "AES_KEY_GEN")
        verdict = RoundTripDriver(session).run_round_trip(RoundTripMode.SINGLE, spec)
        assert verdict.outcome is Outcome.FAIL
        assert "decrypted data does not match" in verdict.detail

    def test_unsupported_is_skip(self):
        session = SoftTokenSession(supported_mechanisms=['AES_ECB'])
        spec = GenerationSpec("DES_ECB", "DES_ECB", "DES_KEY_GEN")
        verdict = RoundTripDriver(session).run_round_trip(RoundTripMode.SINGLE, spec)
        assert verdict.outcome is Outcome.SKIP

    def test_data_length_over_limit(self):
        spec = GenerationSpec("DES_ECB", "DES_ECB", "DES_KEY_GEN", data_length=2048)
        with pytest.raises(ConfigurationError):
            RoundTripDriver(SoftTokenSession()).run_round_trip(RoundTripMode.SINGLE, spec)

    @pytest.mark.parametrize("keygen,length", [
        ('DES3_KEY_GEN', 8),
        ('DES_KEY_GEN', 24),
        ('AES_KEY_GEN', 0),
    ])
    def test_invalid_key_length_fails_before_token_calls(self, keygen, length):
        session = RecordingSession()
        spec = GenerationSpec("BAD_KEY", "DES3_ECB", keygen, key_length=length)
        with patch.object(session, 'generate_key') as generate_key:
            with pytest.raises(ConfigurationError, match="Key length"):
                RoundTripDriver(session).run_round_trip(RoundTripMode.SINGLE, spec)
        generate_key.assert_not_called()

    def test_two_key_des3_round_trip(self):
        spec = GenerationSpec("DES3_CBC", "DES3_CBC", "DES3_KEY_GEN",
                              iv=b'\x01' * 8, key_length=16)
        with SoftTokenSession() as session:
            for mode in RoundTripMode:
                assert RoundTripDriver(session).run_round_trip(mode, spec).passed

    def test_zero_stride(self):
        spec = GenerationSpec("DES_ECB", "DES_ECB", "DES_KEY_GEN", stride=0)
        with pytest.raises(ConfigurationError, match="Stride"):
            RoundTripDriver(SoftTokenSession()).run_round_trip(RoundTripMode.MULTIPART, spec)

    def test_data_length_follows_config(self):
        driver = RoundTripDriver(SoftTokenSession(), RunConfig(max_request_size=256))
        spec = GenerationSpec("AES_CBC", "AES_CBC", "AES_KEY_GEN", iv=AES_IV)
        verdict = driver.run_round_trip(RoundTripMode.MULTIPART, spec)
        assert verdict.passed
        assert verdict.actual_len == 256

    def test_generate_pattern(self):
        data = generate_pattern(300)
        assert len(data) == 300
        assert data[0] == 0
        assert data[254] == 254
        assert data[255] == 0


class TestVerdictReporter:
    """Test cases for verdict bookkeeping."""

    def test_counts_and_summary(self, capsys):
        reporter = VerdictReporter()
        reporter.record(Verdict("a", Outcome.PASS))
        reporter.record(Verdict("b", Outcome.FAIL, 8, 7, "length"))
        reporter.skip_suite(["c", "d"], "not supported")
        assert not reporter.ok
        assert reporter.summary() == \
            "Total=4, Ran=2, Passed=1, Failed=1, Skipped=2, Errors=0"
        reporter.print_result()
        assert "❌" in capsys.readouterr().out

    def test_cleanup_errors_count_as_errors(self):
        reporter = VerdictReporter()
        reporter.record(Verdict("a", Outcome.PASS, cleanup_errors=["C_DestroyObject rc=X"]))
        assert reporter.counts()[Outcome.ERROR] == 1
        assert reporter.counts()[Outcome.PASS] == 1
        assert not reporter.ok

    def test_logs_failures(self, caplog):
        reporter = VerdictReporter()
        with caplog.at_level(logging.INFO, logger="cipherverify"):
            reporter.record(Verdict("case 1", Outcome.FAIL, detail="bytes differ"))
            reporter.record(Verdict("case 2", Outcome.PASS))
        assert "FAIL case 1: bytes differ" in caplog.text
        assert "PASS case 2" in caplog.text


class TestSuiteRunner:
    """Test cases for running whole catalogs."""

    def test_full_run_passes(self):
        with SoftTokenSession() as session:
            runner = SuiteRunner(session)
            assert runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)
        counts = runner.reporter.counts()
        expected = total_published_cases(PUBLISHED_TEST_SUITES) + 3 * len(GENERATED_TEST_SUITES)
        assert counts[Outcome.PASS] == expected

    def test_unsupported_suite_is_skipped(self):
        session = SoftTokenSession(supported_mechanisms=['AES_ECB', 'AES_CBC'])
        runner = SuiteRunner(session)
        assert runner.run(PUBLISHED_TEST_SUITES)
        des_suites = [s for s in PUBLISHED_TEST_SUITES if s.mechanism.startswith('DES')]
        assert runner.reporter.counts()[Outcome.SKIP] == total_published_cases(des_suites)

    def test_stops_on_first_failure(self):
        runner = SuiteRunner(CorruptingSession())
        assert not runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)
        assert len(runner.reporter.verdicts) == 1
        assert runner.reporter.verdicts[0].outcome is Outcome.FAIL

    def test_no_stop_runs_everything(self):
        runner = SuiteRunner(CorruptingSession(), RunConfig(stop_on_failure=False))
        assert not runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)
        expected = total_published_cases(PUBLISHED_TEST_SUITES) + 3 * len(GENERATED_TEST_SUITES)
        assert len(runner.reporter.verdicts) == expected

    def test_policy_skips_imports_but_not_generation(self):
        session = SoftTokenSession(disallowed_key_types=['DES'])
        runner = SuiteRunner(session)
        assert runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)
        skipped = [v for v in runner.reporter.verdicts if v.outcome is Outcome.SKIP]
        des_suites = [s for s in PUBLISHED_TEST_SUITES if s.mechanism.startswith('DES_')]
        assert len(skipped) == total_published_cases(des_suites)

    def test_malformed_vector_is_recorded_as_error(self, sample_vector):
        bad = KnownAnswerVector(key=sample_vector.key, plaintext=sample_vector.plaintext,
                                ciphertext=sample_vector.ciphertext, chunks=(3, 9))
        runner = SuiteRunner(SoftTokenSession(), RunConfig(stop_on_failure=False))
        assert not runner.run([des_suite(bad)])
        outcomes = [v.outcome for v in runner.reporter.verdicts]
        assert outcomes == [Outcome.PASS, Outcome.PASS, Outcome.ERROR, Outcome.ERROR]
        assert runner.reporter.verdicts[2].detail.startswith("Malformed test case")

    def test_malformed_vector_keeps_case_names(self, sample_vector):
        bad = KnownAnswerVector(key=sample_vector.key, plaintext=sample_vector.plaintext,
                                ciphertext=sample_vector.ciphertext, chunks=(3, 9))
        runner = SuiteRunner(SoftTokenSession(), RunConfig(stop_on_failure=False))
        runner.run([des_suite(bad)])

        verifier = StreamingVerifier(SoftTokenSession())
        good = [verifier.run_single_verification(des_suite(bad), 0, Direction.ENCRYPT),
                verifier.run_single_verification(des_suite(bad), 0, Direction.DECRYPT)]
        names = [v.name for v in runner.reporter.verdicts]
        assert names[:2] == [v.name for v in good]
        assert names[2:] == [
            "DES_TEST Multipart Encryption with published test vector 0",
            "DES_TEST Multipart Decryption with published test vector 0",
        ]

    def test_skipped_suite_uses_driver_names(self, sample_vector):
        suite = des_suite(sample_vector)
        with SoftTokenSession() as session:
            verifier = StreamingVerifier(session)
            expected = [
                verifier.run_single_verification(suite, 0, Direction.ENCRYPT).name,
                verifier.run_single_verification(suite, 0, Direction.DECRYPT).name,
                verifier.run_streaming_verification(suite, 0, Direction.ENCRYPT).name,
                verifier.run_streaming_verification(suite, 0, Direction.DECRYPT).name,
            ]
        runner = SuiteRunner(SoftTokenSession(supported_mechanisms=['AES_ECB']))
        runner.run([suite])
        assert [v.name for v in runner.reporter.verdicts] == expected
        assert all(v.outcome is Outcome.SKIP for v in runner.reporter.verdicts)

    def test_malformed_generation_spec_keeps_case_names(self):
        spec = GenerationSpec("DES3_ECB", "DES3_ECB", "DES3_KEY_GEN", key_length=8)
        runner = SuiteRunner(SoftTokenSession(), RunConfig(stop_on_failure=False))
        assert not runner.run(generated=[spec])

        good = GenerationSpec("DES3_ECB", "DES3_ECB", "DES3_KEY_GEN")
        driver = RoundTripDriver(SoftTokenSession())
        expected = [driver.run_round_trip(mode, good).name
                    for mode in (RoundTripMode.WRAP_UNWRAP, RoundTripMode.SINGLE,
                                 RoundTripMode.MULTIPART)]
        assert [v.name for v in runner.reporter.verdicts] == expected
        assert all(v.outcome is Outcome.ERROR for v in runner.reporter.verdicts)
        assert "Key length 8" in runner.reporter.verdicts[0].detail

    def test_suite_filter(self):
        runner = SuiteRunner(SoftTokenSession(), RunConfig(suite_filter="aes_cbc"))
        assert runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)
        names = [v.name for v in runner.reporter.verdicts]
        assert names
        assert all("AES_CBC" in name for name in names)

    def test_published_only(self):
        runner = SuiteRunner(SoftTokenSession(), RunConfig(published_only=True))
        runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)
        assert len(runner.reporter.verdicts) == total_published_cases(PUBLISHED_TEST_SUITES)


class TestVectorCatalog:
    """Sanity checks on the built-in catalog."""

    @pytest.mark.parametrize("suite", PUBLISHED_TEST_SUITES, ids=lambda s: s.name)
    def test_catalog_plans_cover_both_directions(self, suite):
        for vector in suite.vectors:
            planner = FragmentationPlanner(vector.chunks)
            if planner.has_plan:
                planner.validate(len(vector.plaintext))
                planner.validate(len(vector.ciphertext))

    def test_catalog_exercises_null_and_empty(self):
        chunks = [c for s in PUBLISHED_TEST_SUITES for v in s.vectors for c in v.chunks]
        assert CHUNK_NULL in chunks
        assert CHUNK_EMPTY in chunks


class TestCLIHandler:
    """Test cases for CLI handler."""

    def test_parser_defaults(self):
        args = CLIHandler.create_parser().parse_args([])
        config = CLIHandler.build_config(args)
        assert config.stop_on_failure
        assert config.max_request_size == BIG_REQUEST
        assert config.disallowed_key_types == ()

    def test_no_stop_and_policy(self):
        args = CLIHandler.create_parser().parse_args(
            ['--no-stop', '--disallow-key-type', 'DES', '--disallow-key-type', 'AES'])
        config = CLIHandler.build_config(args)
        assert not config.stop_on_failure
        assert config.disallowed_key_types == ('DES', 'AES')

    def test_debug_and_quiet_conflict(self):
        with pytest.raises(SystemExit):
            CLIHandler.create_parser().parse_args(['--debug', '--quiet'])

    def test_validate_args_small_request_size(self):
        args = CLIHandler.create_parser().parse_args(['--max-request-size', '4'])
        with pytest.raises(ConfigurationError):
            CLIHandler.validate_args(args)


class TestApplication:
    """Test cases for the application entry point."""

    def test_run_published_aes(self, capsys):
        status = Application().run(['--suite', 'AES_ECB', '--published-only', '--quiet'])
        assert status == 0
        assert "✓" in capsys.readouterr().out

    def test_run_full_run(self):
        assert Application().run(['--quiet']) == 0

    def test_run_with_policy(self):
        app = Application()
        assert app.run(['--published-only', '--disallow-key-type', 'DES', '--quiet']) == 0
        assert app.reporter.counts()[Outcome.SKIP] > 0

    def test_run_bad_request_size(self, capsys):
        assert Application().run(['--max-request-size', '4']) == 1
        assert "❌ Error" in capsys.readouterr().err

    def test_run_interrupted(self, capsys):
        with patch.object(SuiteRunner, 'run', side_effect=KeyboardInterrupt):
            assert Application().run(['--quiet']) == 1
        assert "cancelled" in capsys.readouterr().out

    def test_run_reports_failure(self):
        with patch('cipherverify.SoftTokenSession', CorruptingSession):
            assert Application().run(['--quiet', '--no-stop']) == 1
