#!/usr/bin/env python3
"""
Block cipher verification harness for session-oriented cryptographic tokens.
Drives encrypt/decrypt sessions through single-shot and multipart (streaming)
paths and checks the output against known-answer vectors or round trips.
"""

import sys
import argparse
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from Crypto.Cipher import AES, DES, DES3
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

# Constants
BIG_REQUEST = 1024  # Largest plaintext/ciphertext a vector may carry
DES_BLOCK_SIZE = 8
AES_BLOCK_SIZE = 16
MAX_BLOCK_SIZE = AES_BLOCK_SIZE
CHUNK_NULL = -1  # Feed an absent fragment
CHUNK_EMPTY = 0  # Feed a present, zero-length fragment

logger = logging.getLogger("cipherverify")


class CipherVerifyError(Exception):
    """Base class for harness errors."""


class CaseSkipped(CipherVerifyError):
    """The environment cannot run this case (unsupported mechanism)."""


class ConfigurationError(CipherVerifyError):
    """A test vector or generation spec is malformed."""


class CollaboratorError(CipherVerifyError):
    """A token call returned something other than CKR_OK."""

    def __init__(self, function: str, rv: str):
        super().__init__(f"{function} rc={rv}")
        self.function = function
        self.rv = rv


class PolicyRejected(CollaboratorError):
    """Key import refused by token policy."""

    def __init__(self, function: str = "C_CreateObject"):
        super().__init__(function, "CKR_POLICY_VIOLATION")


class Direction(Enum):
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"

    @property
    def label(self) -> str:
        return "Encryption" if self is Direction.ENCRYPT else "Decryption"

    @property
    def function_prefix(self) -> str:
        return "C_Encrypt" if self is Direction.ENCRYPT else "C_Decrypt"


class Outcome(Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    ERROR = "error"


@dataclass(frozen=True)
class Mechanism:
    """A cipher mechanism offered by a token."""
    name: str
    key_type: str
    mode: str  # 'ecb' or 'cbc'
    block_size: int
    padded: bool = False

    @property
    def needs_iv(self) -> bool:
        return self.mode == 'cbc'


MECHANISMS: Dict[str, Mechanism] = {m.name: m for m in (
    Mechanism('DES_ECB', 'DES', 'ecb', DES_BLOCK_SIZE),
    Mechanism('DES_CBC', 'DES', 'cbc', DES_BLOCK_SIZE),
    Mechanism('DES_CBC_PAD', 'DES', 'cbc', DES_BLOCK_SIZE, padded=True),
    Mechanism('DES3_ECB', 'DES3', 'ecb', DES_BLOCK_SIZE),
    Mechanism('DES3_CBC', 'DES3', 'cbc', DES_BLOCK_SIZE),
    Mechanism('DES3_CBC_PAD', 'DES3', 'cbc', DES_BLOCK_SIZE, padded=True),
    Mechanism('AES_ECB', 'AES', 'ecb', AES_BLOCK_SIZE),
    Mechanism('AES_CBC', 'AES', 'cbc', AES_BLOCK_SIZE),
    Mechanism('AES_CBC_PAD', 'AES', 'cbc', AES_BLOCK_SIZE, padded=True),
)}

# keygen mechanism -> (key type, default key length)
KEYGEN_MECHANISMS: Dict[str, Tuple[str, int]] = {
    'DES_KEY_GEN': ('DES', 8),
    'DES3_KEY_GEN': ('DES3', 24),
    'AES_KEY_GEN': ('AES', 32),
}

KEY_TYPES = frozenset(kt for kt, _ in KEYGEN_MECHANISMS.values())

# key type -> accepted key lengths in bytes
KEY_LENGTHS: Dict[str, Tuple[int, ...]] = {
    'DES': (8,),
    'DES3': (16, 24),
    'AES': (16, 24, 32),
}


@dataclass(frozen=True)
class KnownAnswerVector:
    """A published known-answer test vector."""

    key: bytes
    plaintext: bytes
    ciphertext: bytes
    iv: bytes = b''
    chunks: Tuple[int, ...] = ()


@dataclass(frozen=True)
class PublishedTestSuite:
    """Known-answer vectors sharing one mechanism."""
    name: str
    mechanism: str
    vectors: Tuple[KnownAnswerVector, ...]


@dataclass(frozen=True)
class GenerationSpec:
    """How to build a round-trip case when no published vector exists."""
    name: str
    mechanism: str
    keygen: str
    iv: bytes = b''
    key_length: Optional[int] = None
    data_length: Optional[int] = None  # defaults to the max request size
    stride: Optional[int] = None


@dataclass
class Verdict:
    """Result of one test case."""
    name: str
    outcome: Outcome
    expected_len: int = 0
    actual_len: int = 0
    detail: Optional[str] = None
    cleanup_errors: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASS


@dataclass
class RunConfig:
    """Settings for one harness run."""
    max_request_size: int = BIG_REQUEST
    stop_on_failure: bool = True
    debug: bool = False
    quiet: bool = False
    suite_filter: Optional[str] = None
    disallowed_key_types: Tuple[str, ...] = ()
    published_only: bool = False
    generated_only: bool = False


class ChunkKind(Enum):
    NULL = "null"
    EMPTY = "empty"
    SIZED = "sized"


@dataclass(frozen=True)
class ChunkDirective:
    """One entry of a chunk plan."""
    kind: ChunkKind
    length: int = 0

    @classmethod
    def from_int(cls, value: int) -> 'ChunkDirective':
        """Decode the integer form used in vector tables."""
        if value == CHUNK_NULL:
            return cls(ChunkKind.NULL)
        if value == CHUNK_EMPTY:
            return cls(ChunkKind.EMPTY)
        if value > 0:
            return cls(ChunkKind.SIZED, value)
        raise ConfigurationError(f"Invalid chunk directive: {value}")


class FragmentationPlanner:
    """Turns a chunk plan into fragments of a source buffer.

    A fragment is ``None`` for a Null directive, ``b''`` for an Empty one and
    the next ``n`` source bytes for Sized(n). Joining the fragments that are
    not ``None`` gives back the source exactly.
    """

    def __init__(self, chunks: Sequence[int]):
        self.directives = [ChunkDirective.from_int(c) for c in chunks]

    @property
    def has_plan(self) -> bool:
        return bool(self.directives)

    def validate(self, source_len: int) -> None:
        """Check that Sized directives cover the source exactly."""
        total = sum(d.length for d in self.directives if d.kind is ChunkKind.SIZED)
        if total > source_len:
            raise ConfigurationError(
                f"Chunk plan overruns source: plan covers {total} bytes, "
                f"source has {source_len}")
        if total < source_len:
            raise ConfigurationError(
                f"Chunk plan leaves source bytes unfed: plan covers {total} bytes, "
                f"source has {source_len}")

    def fragments(self, source: bytes) -> Iterator[Optional[bytes]]:
        """Validate against ``source`` now, then yield fragments lazily."""
        if not self.has_plan:
            raise ConfigurationError("No chunk plan to fragment with")
        self.validate(len(source))
        return self._iter_fragments(source)

    def _iter_fragments(self, source: bytes) -> Iterator[Optional[bytes]]:
        cursor = 0
        for directive in self.directives:
            if directive.kind is ChunkKind.NULL:
                yield None
            elif directive.kind is ChunkKind.EMPTY:
                yield b''
            else:
                yield source[cursor:cursor + directive.length]
                cursor += directive.length


@dataclass
class StreamState:
    """Cursors for one streaming pass."""
    capacity: int
    source_cursor: int = 0
    dest_cursor: int = 0
    dest_capacity_remaining: int = field(init=False)

    def __post_init__(self):
        self.dest_capacity_remaining = self.capacity - self.dest_cursor

    def consume(self, fragment: Optional[bytes], source_len: int) -> None:
        """Advance the source cursor past ``fragment``."""
        n = len(fragment) if fragment else 0
        if self.source_cursor + n > source_len:
            raise ConfigurationError("Source cursor ran past the end of the source")
        self.source_cursor += n


class Accumulator:
    """Fixed-capacity destination buffer, zeroed before each use."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._buffer = bytearray(capacity)

    def reset(self) -> StreamState:
        """Zero the buffer and start a new stream over it."""
        self._buffer[:] = bytes(self.capacity)
        return StreamState(self.capacity)

    def append(self, state: StreamState, output: bytes, function: str) -> None:
        """Store session output at the destination cursor."""
        n = len(output)
        if n > state.dest_capacity_remaining:
            # The session wrote past the capacity it was given
            raise CollaboratorError(function, "output exceeds destination capacity")
        self._buffer[state.dest_cursor:state.dest_cursor + n] = output
        state.dest_cursor += n
        state.dest_capacity_remaining = self.capacity - state.dest_cursor

    def contents(self, state: StreamState) -> bytes:
        return bytes(self._buffer[:state.dest_cursor])


class CipherSession(ABC):
    """Abstract session on a cryptographic token.

    Every method raises CollaboratorError when the token reports a non-OK
    result. Key handles are opaque to the callers.
    """

    @abstractmethod
    def mechanism_supported(self, mechanism: str) -> bool:
        """Whether the token can run this cipher mechanism."""
        pass

    @abstractmethod
    def wrap_supported(self, mechanism: str) -> bool:
        """Whether the token can wrap keys with this mechanism."""
        pass

    @abstractmethod
    def create_secret_key(self, key_type: str, value: bytes) -> int:
        """Import raw key material. Raises PolicyRejected when disallowed."""
        pass

    @abstractmethod
    def generate_key(self, keygen: str, key_length: Optional[int] = None) -> int:
        """Generate a secret key with a key generation mechanism."""
        pass

    @abstractmethod
    def destroy_key(self, handle: int) -> None:
        """Destroy a key object."""
        pass

    @abstractmethod
    def init_cipher(self, direction: Direction, mechanism: str,
                    params: bytes, key: int) -> None:
        """Start an encrypt or decrypt operation with the given key."""
        pass

    @abstractmethod
    def update(self, fragment: Optional[bytes], dest_capacity: int) -> bytes:
        """Feed one fragment; ``None`` is an absent fragment of length 0."""
        pass

    @abstractmethod
    def final(self, dest_capacity: int) -> bytes:
        """Finish the active operation and return the remaining output."""
        pass

    @abstractmethod
    def one_shot(self, data: bytes, dest_capacity: int) -> bytes:
        """Process the whole input in one call and finish the operation."""
        pass

    @abstractmethod
    def wrap_key(self, mechanism: str, params: bytes, wrapping_key: int,
                 key: int, dest_capacity: int) -> bytes:
        """Encrypt a key object under a wrapping key."""
        pass

    @abstractmethod
    def unwrap_key(self, mechanism: str, params: bytes, unwrapping_key: int,
                   wrapped: bytes, template: Dict[str, str]) -> int:
        """Decrypt wrapped key material into a new key object."""
        pass


class KeyScope:
    """Owns key handles for one test case and destroys them on exit.

    Destroy failures are collected in ``errors`` instead of raised, so they
    never replace the verdict or exception already in flight.
    """

    def __init__(self, session: CipherSession):
        self.session = session
        self.handles: List[int] = []
        self.errors: List[str] = []

    def adopt(self, handle: int) -> int:
        self.handles.append(handle)
        return handle

    def __enter__(self) -> 'KeyScope':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        while self.handles:
            handle = self.handles.pop()
            try:
                self.session.destroy_key(handle)
            except CollaboratorError as e:
                logger.error("Failed to destroy key %d: %s", handle, e)
                self.errors.append(str(e))


@dataclass
class _KeyObject:
    key_type: str
    value: bytes


class _CipherOperation:
    """An active encrypt or decrypt operation with its pending partial block."""

    def __init__(self, direction: Direction, mechanism: Mechanism, cipher):
        self.direction = direction
        self.mechanism = mechanism
        self.cipher = cipher
        self.pending = b''

    def transform(self, data: bytes) -> bytes:
        if not data:
            return b''
        if self.direction is Direction.ENCRYPT:
            return self.cipher.encrypt(data)
        return self.cipher.decrypt(data)

    def ready_length(self, data: bytes) -> int:
        """How many buffered bytes an update with ``data`` would release."""
        total = len(self.pending) + len(data)
        bs = self.mechanism.block_size
        if self.mechanism.padded and self.direction is Direction.DECRYPT:
            # The last full block may be padding and waits for final
            return ((total - 1) // bs) * bs if total else 0
        return (total // bs) * bs

    def update(self, data: bytes) -> bytes:
        buffered = self.pending + data
        ready = self.ready_length(data)
        self.pending = buffered[ready:]
        return self.transform(buffered[:ready])

    def final_length_bound(self) -> int:
        """Largest output final can produce; raises if the pending data is invalid."""
        bs = self.mechanism.block_size
        function = f"{self.direction.function_prefix}Final"
        if not self.mechanism.padded:
            if self.pending:
                rv = ("CKR_DATA_LEN_RANGE" if self.direction is Direction.ENCRYPT
                      else "CKR_ENCRYPTED_DATA_LEN_RANGE")
                raise CollaboratorError(function, rv)
            return 0
        if self.direction is Direction.ENCRYPT:
            return bs
        if len(self.pending) != bs:
            raise CollaboratorError(function, "CKR_ENCRYPTED_DATA_LEN_RANGE")
        return bs - 1

    def final_output(self) -> bytes:
        bs = self.mechanism.block_size
        prefix = self.direction.function_prefix
        if not self.mechanism.padded:
            return b''
        if self.direction is Direction.ENCRYPT:
            return self.transform(pad(self.pending, bs))
        try:
            return unpad(self.transform(self.pending), bs)
        except ValueError:
            raise CollaboratorError(f"{prefix}Final", "CKR_ENCRYPTED_DATA_INVALID")


class SoftTokenSession(CipherSession):
    """In-process token implementing the session contract over pycryptodome.

    Use as a context manager for the duration of a run; closing destroys any
    key objects left behind.
    """

    def __init__(self, supported_mechanisms: Optional[Sequence[str]] = None,
                 disallowed_key_types: Sequence[str] = ()):
        names = MECHANISMS if supported_mechanisms is None else supported_mechanisms
        self.supported = {n for n in names if n in MECHANISMS}
        self.disallowed_key_types = set(disallowed_key_types)
        self._objects: Dict[int, _KeyObject] = {}
        self._next_handle = 1
        self._operation: Optional[_CipherOperation] = None
        self.is_open = False

    def __enter__(self) -> 'SoftTokenSession':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self.is_open = True

    def close(self) -> None:
        if self._objects:
            logger.warning("Closing session with %d leaked key object(s)",
                           len(self._objects))
        self._objects.clear()
        self._operation = None
        self.is_open = False

    @property
    def object_count(self) -> int:
        return len(self._objects)

    # Capability queries

    def mechanism_supported(self, mechanism: str) -> bool:
        return mechanism in self.supported

    def wrap_supported(self, mechanism: str) -> bool:
        return self.mechanism_supported(mechanism)

    # Key objects

    def _store(self, key_type: str, value: bytes, function: str) -> int:
        if key_type not in KEY_TYPES:
            raise CollaboratorError(function, "CKR_ATTRIBUTE_VALUE_INVALID")
        self._build_cipher(MECHANISMS[f"{key_type}_ECB"], value, b'', function)
        handle = self._next_handle
        self._next_handle += 1
        self._objects[handle] = _KeyObject(key_type, value)
        logger.debug("%s created key object %d (%s)", function, handle, key_type)
        return handle

    def _lookup(self, handle: int, function: str) -> _KeyObject:
        try:
            return self._objects[handle]
        except KeyError:
            raise CollaboratorError(function, "CKR_KEY_HANDLE_INVALID")

    def create_secret_key(self, key_type: str, value: bytes) -> int:
        if key_type not in KEY_TYPES:
            raise CollaboratorError("C_CreateObject", "CKR_ATTRIBUTE_VALUE_INVALID")
        if key_type in self.disallowed_key_types:
            raise PolicyRejected("C_CreateObject")
        return self._store(key_type, bytes(value), "C_CreateObject")

    def generate_key(self, keygen: str, key_length: Optional[int] = None) -> int:
        if keygen not in KEYGEN_MECHANISMS:
            raise CollaboratorError("C_GenerateKey", "CKR_MECHANISM_INVALID")
        key_type, default_length = KEYGEN_MECHANISMS[keygen]
        length = default_length if key_length is None else key_length
        if length not in KEY_LENGTHS[key_type]:
            raise CollaboratorError("C_GenerateKey", "CKR_KEY_SIZE_RANGE")
        if key_type == 'DES3':
            # Retry only on keys that degenerate to single DES
            while True:
                try:
                    value = DES3.adjust_key_parity(get_random_bytes(length))
                    break
                except ValueError:
                    continue
        else:
            value = get_random_bytes(length)
        return self._store(key_type, value, "C_GenerateKey")

    def destroy_key(self, handle: int) -> None:
        self._lookup(handle, "C_DestroyObject")
        del self._objects[handle]

    # Cipher operations

    def _mechanism(self, name: str, function: str) -> Mechanism:
        if name not in self.supported:
            raise CollaboratorError(function, "CKR_MECHANISM_INVALID")
        return MECHANISMS[name]

    def _build_cipher(self, mechanism: Mechanism, key: bytes, iv: bytes, function: str):
        module = {'DES': DES, 'DES3': DES3, 'AES': AES}[mechanism.key_type]
        if mechanism.needs_iv and len(iv) != mechanism.block_size:
            raise CollaboratorError(function, "CKR_MECHANISM_PARAM_INVALID")
        try:
            if mechanism.needs_iv:
                return module.new(key, module.MODE_CBC, iv=iv)
            return module.new(key, module.MODE_ECB)
        except ValueError:
            raise CollaboratorError(function, "CKR_KEY_SIZE_RANGE")

    def init_cipher(self, direction: Direction, mechanism: str,
                    params: bytes, key: int) -> None:
        function = f"{direction.function_prefix}Init"
        if self._operation is not None:
            logger.debug("%s discards an unfinished %s operation", function,
                         self._operation.direction.value)
            self._operation = None
        mech = self._mechanism(mechanism, function)
        obj = self._lookup(key, function)
        if obj.key_type != mech.key_type:
            raise CollaboratorError(function, "CKR_KEY_TYPE_INCONSISTENT")
        cipher = self._build_cipher(mech, obj.value, params, function)
        self._operation = _CipherOperation(direction, mech, cipher)

    def _active(self, suffix: str) -> Tuple[_CipherOperation, str]:
        if self._operation is None:
            raise CollaboratorError(f"C_Crypt{suffix}", "CKR_OPERATION_NOT_INITIALIZED")
        return self._operation, f"{self._operation.direction.function_prefix}{suffix}"

    def update(self, fragment: Optional[bytes], dest_capacity: int) -> bytes:
        operation, function = self._active("Update")
        data = fragment or b''
        if operation.ready_length(data) > dest_capacity:
            raise CollaboratorError(function, "CKR_BUFFER_TOO_SMALL")
        return operation.update(data)

    def final(self, dest_capacity: int) -> bytes:
        operation, function = self._active("Final")
        try:
            bound = operation.final_length_bound()
        except CollaboratorError:
            self._operation = None
            raise
        if bound > dest_capacity:
            # Operation stays active so the caller may retry with more room
            raise CollaboratorError(function, "CKR_BUFFER_TOO_SMALL")
        self._operation = None
        return operation.final_output()

    def one_shot(self, data: bytes, dest_capacity: int) -> bytes:
        operation, _ = self._active("")
        function = operation.direction.function_prefix
        mech = operation.mechanism
        bs = mech.block_size
        pads = mech.padded and operation.direction is Direction.ENCRYPT
        # Padded ciphertext holds at least one block, as final requires
        unpads = mech.padded and operation.direction is Direction.DECRYPT
        if (len(data) % bs and not pads) or (unpads and not data):
            self._operation = None
            rv = ("CKR_DATA_LEN_RANGE" if operation.direction is Direction.ENCRYPT
                  else "CKR_ENCRYPTED_DATA_LEN_RANGE")
            raise CollaboratorError(function, rv)
        expected = (len(data) // bs + 1) * bs if pads else len(data)
        if expected > dest_capacity:
            raise CollaboratorError(function, "CKR_BUFFER_TOO_SMALL")
        self._operation = None
        if operation.direction is Direction.ENCRYPT:
            return operation.transform(pad(data, bs) if mech.padded else data)
        output = operation.transform(data)
        if mech.padded:
            try:
                output = unpad(output, bs)
            except ValueError:
                raise CollaboratorError(function, "CKR_ENCRYPTED_DATA_INVALID")
        return output

    # Key wrapping

    def wrap_key(self, mechanism: str, params: bytes, wrapping_key: int,
                 key: int, dest_capacity: int) -> bytes:
        mech = self._mechanism(mechanism, "C_WrapKey")
        wrapper = self._lookup(wrapping_key, "C_WrapKey")
        target = self._lookup(key, "C_WrapKey")
        if wrapper.key_type != mech.key_type:
            raise CollaboratorError("C_WrapKey", "CKR_WRAPPING_KEY_TYPE_INCONSISTENT")
        value = pad(target.value, mech.block_size) if mech.padded else target.value
        if len(value) % mech.block_size:
            raise CollaboratorError("C_WrapKey", "CKR_KEY_SIZE_RANGE")
        if len(value) > dest_capacity:
            raise CollaboratorError("C_WrapKey", "CKR_BUFFER_TOO_SMALL")
        return self._build_cipher(mech, wrapper.value, params, "C_WrapKey").encrypt(value)

    def unwrap_key(self, mechanism: str, params: bytes, unwrapping_key: int,
                   wrapped: bytes, template: Dict[str, str]) -> int:
        mech = self._mechanism(mechanism, "C_UnwrapKey")
        unwrapper = self._lookup(unwrapping_key, "C_UnwrapKey")
        if unwrapper.key_type != mech.key_type:
            raise CollaboratorError("C_UnwrapKey", "CKR_UNWRAPPING_KEY_TYPE_INCONSISTENT")
        if not wrapped or len(wrapped) % mech.block_size:
            raise CollaboratorError("C_UnwrapKey", "CKR_WRAPPED_KEY_LEN_RANGE")
        value = self._build_cipher(mech, unwrapper.value, params,
                                   "C_UnwrapKey").decrypt(wrapped)
        if mech.padded:
            try:
                value = unpad(value, mech.block_size)
            except ValueError:
                raise CollaboratorError("C_UnwrapKey", "CKR_WRAPPED_KEY_INVALID")
        key_type = template.get('key_type')
        if key_type is None:
            raise CollaboratorError("C_UnwrapKey", "CKR_TEMPLATE_INCOMPLETE")
        return self._store(key_type, value, "C_UnwrapKey")


def compare_output(name: str, expected: bytes, actual: bytes, what: str) -> Verdict:
    """Length check first, then byte check."""
    if len(actual) != len(expected):
        return Verdict(name, Outcome.FAIL, len(expected), len(actual),
                       f"{what} length does not match: expected length="
                       f"{len(expected)}, but found length={len(actual)}")
    if actual != expected:
        return Verdict(name, Outcome.FAIL, len(expected), len(actual),
                       f"{what} does not match")
    return Verdict(name, Outcome.PASS, len(expected), len(actual))


def published_case_name(suite_name: str, index: int, direction: Direction,
                        multipart: bool = False) -> str:
    kind = "Multipart " if multipart else ""
    return f"{suite_name} {kind}{direction.label} with published test vector {index}"


class StreamingVerifier:
    """Checks a session against published vectors, single-shot or multipart."""

    def __init__(self, session: CipherSession, config: Optional[RunConfig] = None):
        self.session = session
        self.config = config or RunConfig()
        self.accumulator = Accumulator(self.config.max_request_size)

    def _check_vector(self, suite: PublishedTestSuite, vector: KnownAnswerVector) -> None:
        if suite.mechanism not in MECHANISMS:
            raise ConfigurationError(f"Unknown mechanism: {suite.mechanism}")
        limit = self.config.max_request_size
        for label, data in (('plaintext', vector.plaintext),
                            ('ciphertext', vector.ciphertext)):
            if len(data) > limit:
                raise ConfigurationError(
                    f"Vector {label} is {len(data)} bytes, limit is {limit}")

    def _select(self, vector: KnownAnswerVector, direction: Direction) -> Tuple[bytes, bytes, str]:
        if direction is Direction.ENCRYPT:
            return vector.plaintext, vector.ciphertext, "encrypted data"
        return vector.ciphertext, vector.plaintext, "decrypted data"

    def _start(self, keys: KeyScope, suite: PublishedTestSuite,
               vector: KnownAnswerVector, direction: Direction) -> None:
        if not self.session.mechanism_supported(suite.mechanism):
            raise CaseSkipped(f"Mechanism {suite.mechanism} is not supported")
        key_type = MECHANISMS[suite.mechanism].key_type
        key = keys.adopt(self.session.create_secret_key(key_type, vector.key))
        self.session.init_cipher(direction, suite.mechanism, vector.iv, key)

    def _run(self, name: str, suite: PublishedTestSuite, vector: KnownAnswerVector,
             direction: Direction, body) -> Verdict:
        with KeyScope(self.session) as keys:
            try:
                self._start(keys, suite, vector, direction)
                verdict = body()
            except PolicyRejected:
                verdict = Verdict(name, Outcome.SKIP,
                                  detail=f"{MECHANISMS[suite.mechanism].key_type} "
                                         f"key import is not allowed by policy")
            except CaseSkipped as e:
                verdict = Verdict(name, Outcome.SKIP, detail=str(e))
            except CollaboratorError as e:
                verdict = Verdict(name, Outcome.ERROR, detail=str(e))
        verdict.cleanup_errors.extend(keys.errors)
        return verdict

    def run_single_verification(self, suite: PublishedTestSuite, index: int,
                                direction: Direction) -> Verdict:
        """One-shot encrypt or decrypt of a published vector."""
        vector = suite.vectors[index]
        name = published_case_name(suite.name, index, direction)
        self._check_vector(suite, vector)
        source, expected, what = self._select(vector, direction)

        def body() -> Verdict:
            output = self.session.one_shot(source, self.accumulator.capacity)
            return compare_output(name, expected, output, what)

        return self._run(name, suite, vector, direction, body)

    def run_streaming_verification(self, suite: PublishedTestSuite, index: int,
                                   direction: Direction) -> Verdict:
        """Multipart encrypt or decrypt of a published vector, following its chunk plan."""
        vector = suite.vectors[index]
        name = published_case_name(suite.name, index, direction, multipart=True)
        self._check_vector(suite, vector)
        source, expected, what = self._select(vector, direction)
        planner = FragmentationPlanner(vector.chunks)
        fragments = planner.fragments(source) if planner.has_plan else None
        prefix = direction.function_prefix

        def body() -> Verdict:
            state = self.accumulator.reset()
            if fragments is None:
                output = self.session.update(source, state.dest_capacity_remaining)
                state.consume(source, len(source))
                self.accumulator.append(state, output, f"{prefix}Update")
            else:
                for fragment in fragments:
                    output = self.session.update(fragment, state.dest_capacity_remaining)
                    state.consume(fragment, len(source))
                    self.accumulator.append(state, output, f"{prefix}Update")
            output = self.session.final(state.dest_capacity_remaining)
            self.accumulator.append(state, output, f"{prefix}Final")
            logger.debug("%s: fed %d bytes, collected %d bytes",
                         name, state.source_cursor, state.dest_cursor)
            return compare_output(name, expected, self.accumulator.contents(state),
                                  f"{what} (multipart)")

        return self._run(name, suite, vector, direction, body)


class RoundTripMode(Enum):
    SINGLE = "single"
    MULTIPART = "multipart"
    WRAP_UNWRAP = "wrap_unwrap"


ROUND_TRIP_LABELS = {
    RoundTripMode.SINGLE: "Encryption/Decryption with key generation",
    RoundTripMode.MULTIPART: "Multipart Encryption/Decryption with key generation",
    RoundTripMode.WRAP_UNWRAP: "Wrap/Unwrap key",
}


def round_trip_case_name(spec_name: str, mode: RoundTripMode) -> str:
    return f"{spec_name} {ROUND_TRIP_LABELS[mode]} test"


def generate_pattern(length: int) -> bytes:
    """Synthetic plaintext: byte i is i mod 255."""
    return bytes(i % 255 for i in range(length))


class RoundTripDriver:
    """Encrypts generated data with a generated key and checks it decrypts back."""

    def __init__(self, session: CipherSession, config: Optional[RunConfig] = None):
        self.session = session
        self.config = config or RunConfig()
        capacity = self.config.max_request_size + MAX_BLOCK_SIZE
        self.crypt = Accumulator(capacity)
        self.decrypt = Accumulator(capacity)

    def _data_length(self, spec: GenerationSpec) -> int:
        if spec.data_length is None:
            return self.config.max_request_size
        return spec.data_length

    def _check_spec(self, spec: GenerationSpec) -> Mechanism:
        if spec.mechanism not in MECHANISMS:
            raise ConfigurationError(f"Unknown mechanism: {spec.mechanism}")
        if spec.keygen not in KEYGEN_MECHANISMS:
            raise ConfigurationError(f"Unknown key generation mechanism: {spec.keygen}")
        key_type = KEYGEN_MECHANISMS[spec.keygen][0]
        if spec.key_length is not None and spec.key_length not in KEY_LENGTHS[key_type]:
            raise ConfigurationError(
                f"Key length {spec.key_length} invalid for {key_type}, "
                f"expected one of {KEY_LENGTHS[key_type]}")
        if not 0 <= self._data_length(spec) <= self.config.max_request_size:
            raise ConfigurationError(
                f"Data length {self._data_length(spec)} outside 0..{self.config.max_request_size}")
        if spec.stride is not None and spec.stride <= 0:
            raise ConfigurationError(f"Stride must be positive, got {spec.stride}")
        return MECHANISMS[spec.mechanism]

    def _stream(self, direction: Direction, spec: GenerationSpec, key: int,
                source: bytes, stride: int, accumulator: Accumulator) -> bytes:
        """Fixed-stride update loop followed by final."""
        prefix = direction.function_prefix
        self.session.init_cipher(direction, spec.mechanism, spec.iv, key)
        state = accumulator.reset()
        while state.source_cursor < len(source):
            fragment = source[state.source_cursor:state.source_cursor + stride]
            output = self.session.update(fragment, state.dest_capacity_remaining)
            state.consume(fragment, len(source))
            accumulator.append(state, output, f"{prefix}Update")
        output = self.session.final(state.dest_capacity_remaining)
        accumulator.append(state, output, f"{prefix}Final")
        return accumulator.contents(state)

    def _single(self, direction: Direction, spec: GenerationSpec, key: int,
                source: bytes, accumulator: Accumulator) -> bytes:
        self.session.init_cipher(direction, spec.mechanism, spec.iv, key)
        return self.session.one_shot(source, accumulator.capacity)

    def run_round_trip(self, mode: RoundTripMode, spec: GenerationSpec) -> Verdict:
        mech = self._check_spec(spec)
        name = round_trip_case_name(spec.name, mode)
        original = generate_pattern(self._data_length(spec))

        with KeyScope(self.session) as keys:
            try:
                if not self.session.mechanism_supported(spec.mechanism):
                    raise CaseSkipped(f"Mechanism {spec.mechanism} is not supported")
                if mode is RoundTripMode.WRAP_UNWRAP and \
                        not self.session.wrap_supported(spec.mechanism):
                    raise CaseSkipped(f"Mechanism {spec.mechanism} cannot wrap keys")
                key = keys.adopt(self.session.generate_key(spec.keygen, spec.key_length))

                if mode is RoundTripMode.MULTIPART:
                    stride = spec.stride or mech.block_size
                    crypt = self._stream(Direction.ENCRYPT, spec, key, original,
                                         stride, self.crypt)
                    recovered = self._stream(Direction.DECRYPT, spec, key, crypt,
                                             stride, self.decrypt)
                    what = "decrypted multipart data"
                else:
                    crypt = self._single(Direction.ENCRYPT, spec, key, original, self.crypt)
                    if mode is RoundTripMode.WRAP_UNWRAP:
                        key = self._wrap_unwrap(keys, spec, mech, key)
                    recovered = self._single(Direction.DECRYPT, spec, key, crypt,
                                             self.decrypt)
                    what = "decrypted data"
                verdict = compare_output(name, original, recovered, what)
            except CaseSkipped as e:
                verdict = Verdict(name, Outcome.SKIP, detail=str(e))
            except CollaboratorError as e:
                verdict = Verdict(name, Outcome.ERROR, detail=str(e))
        verdict.cleanup_errors.extend(keys.errors)
        return verdict

    def _wrap_unwrap(self, keys: KeyScope, spec: GenerationSpec,
                     mech: Mechanism, key: int) -> int:
        """Wrap ``key`` under a fresh key and return the unwrapped copy's handle."""
        wrapping_key = keys.adopt(self.session.generate_key(spec.keygen, spec.key_length))
        wrapped = self.session.wrap_key(spec.mechanism, spec.iv, wrapping_key, key,
                                        self.crypt.capacity)
        template = {'class': 'SECRET_KEY', 'key_type': mech.key_type}
        return keys.adopt(self.session.unwrap_key(spec.mechanism, spec.iv,
                                                  wrapping_key, wrapped, template))


class VerdictReporter:
    """Collects verdicts and prints the run summary."""

    def __init__(self):
        self.verdicts: List[Verdict] = []
        self.cleanup_error_count = 0

    def record(self, verdict: Verdict) -> Verdict:
        self.verdicts.append(verdict)
        if verdict.outcome is Outcome.PASS:
            logger.info("PASS %s", verdict.name)
        elif verdict.outcome is Outcome.SKIP:
            logger.info("SKIP %s: %s", verdict.name, verdict.detail)
        elif verdict.outcome is Outcome.FAIL:
            logger.warning("FAIL %s: %s", verdict.name, verdict.detail)
        else:
            logger.error("ERROR %s: %s", verdict.name, verdict.detail)
        for error in verdict.cleanup_errors:
            logger.error("ERROR %s cleanup: %s", verdict.name, error)
        self.cleanup_error_count += len(verdict.cleanup_errors)
        return verdict

    def skip_suite(self, names: Sequence[str], reason: str) -> None:
        for name in names:
            self.record(Verdict(name, Outcome.SKIP, detail=reason))

    def counts(self) -> Counter:
        counts = Counter(v.outcome for v in self.verdicts)
        counts[Outcome.ERROR] += self.cleanup_error_count
        return counts

    @property
    def ok(self) -> bool:
        counts = self.counts()
        return counts[Outcome.FAIL] == 0 and counts[Outcome.ERROR] == 0

    def summary(self) -> str:
        counts = self.counts()
        ran = counts[Outcome.PASS] + counts[Outcome.FAIL]
        return (f"Total={len(self.verdicts)}, Ran={ran}, "
                f"Passed={counts[Outcome.PASS]}, Failed={counts[Outcome.FAIL]}, "
                f"Skipped={counts[Outcome.SKIP]}, Errors={counts[Outcome.ERROR]}")

    def print_result(self, stream=None) -> None:
        stream = stream or sys.stdout
        mark = "✓" if self.ok else "❌"
        print(f"{mark} {self.summary()}", file=stream)


class StopRun(Exception):
    """Raised inside the runner to end the run early."""


class SuiteRunner:
    """Runs every suite in catalog order, the way the token test program does."""

    def __init__(self, session: CipherSession, config: Optional[RunConfig] = None,
                 reporter: Optional[VerdictReporter] = None):
        self.session = session
        self.config = config or RunConfig()
        self.reporter = reporter or VerdictReporter()
        self.streaming = StreamingVerifier(session, self.config)
        self.round_trip = RoundTripDriver(session, self.config)

    def _wanted(self, name: str) -> bool:
        return not self.config.suite_filter or \
            self.config.suite_filter.lower() in name.lower()

    def _record(self, verdict: Verdict) -> None:
        self.reporter.record(verdict)
        failed = verdict.outcome in (Outcome.FAIL, Outcome.ERROR) or verdict.cleanup_errors
        if failed and self.config.stop_on_failure:
            raise StopRun(verdict.name)

    def _guarded(self, name: str, action) -> None:
        try:
            verdict = action()
        except ConfigurationError as e:
            verdict = Verdict(name, Outcome.ERROR, detail=f"Malformed test case: {e}")
        self._record(verdict)

    def run_published(self, suite: PublishedTestSuite) -> None:
        steps = (
            (False, self.streaming.run_single_verification, Direction.ENCRYPT),
            (False, self.streaming.run_single_verification, Direction.DECRYPT),
            (True, self.streaming.run_streaming_verification, Direction.ENCRYPT),
            (True, self.streaming.run_streaming_verification, Direction.DECRYPT),
        )
        cases = [(published_case_name(suite.name, i, direction, multipart), run, direction, i)
                 for multipart, run, direction in steps
                 for i in range(len(suite.vectors))]
        if not self.session.mechanism_supported(suite.mechanism):
            self.reporter.skip_suite([name for name, _, _, _ in cases],
                                     f"Token doesn't support {suite.mechanism}")
            return
        for name, run, direction, i in cases:
            self._guarded(name, lambda: run(suite, i, direction))

    def run_generated(self, spec: GenerationSpec) -> None:
        for mode in (RoundTripMode.WRAP_UNWRAP, RoundTripMode.SINGLE,
                     RoundTripMode.MULTIPART):
            self._guarded(round_trip_case_name(spec.name, mode),
                          lambda: self.round_trip.run_round_trip(mode, spec))

    def run(self, published: Sequence[PublishedTestSuite] = (),
            generated: Sequence[GenerationSpec] = ()) -> bool:
        """Run the selected suites; return True when nothing failed."""
        try:
            if not self.config.generated_only:
                for suite in published:
                    if self._wanted(suite.name):
                        self.run_published(suite)
            if not self.config.published_only:
                for spec in generated:
                    if self._wanted(spec.name):
                        self.run_generated(spec)
        except StopRun as e:
            logger.warning("Stopping after first failure (%s); use --no-stop to continue", e)
        return self.reporter.ok


_NOW_IS_THE_TIME = b"Now is the time for all "
_SP800_38A_PLAINTEXT = bytes.fromhex(
    "6bc1bee22e409f96e93d7e117393172a"
    "ae2d8a571e03ac9c9eb76fac45af8e51"
    "30c81c46a35ce411e5fbc1191a0a52ef"
    "f69f2445df4f9b17ad2b417be66c3710")
_SP800_38A_KEY = bytes.fromhex("2b7e151628aed2a6abf7158809cf4f3c")
_SP800_38A_IV = bytes.fromhex("000102030405060708090a0b0c0d0e0f")

PUBLISHED_TEST_SUITES: Tuple[PublishedTestSuite, ...] = (
    PublishedTestSuite("DES_ECB", "DES_ECB", (
        KnownAnswerVector(key=bytes.fromhex("0123456789abcdef"),
                          plaintext=_NOW_IS_THE_TIME,
                          ciphertext=bytes.fromhex("3fa40e8a984d4815"
                                                   "6a271787ab8883f9"
                                                   "893d51ec4b563b53"),
                          chunks=(3, CHUNK_NULL, 5, CHUNK_EMPTY, 16)),
        KnownAnswerVector(key=bytes.fromhex("133457799bbcdff1"),
                          plaintext=bytes.fromhex("0123456789abcdef"),
                          ciphertext=bytes.fromhex("85e813540f0ab405")),
        KnownAnswerVector(key=bytes.fromhex("0e329232ea6d0d73"),
                          plaintext=bytes.fromhex("8787878787878787"),
                          ciphertext=bytes.fromhex("0000000000000000"),
                          chunks=(CHUNK_EMPTY, 1, 1, 6, CHUNK_NULL)),
    )),
    PublishedTestSuite("DES_CBC", "DES_CBC", (
        KnownAnswerVector(key=bytes.fromhex("0123456789abcdef"),
                          iv=bytes.fromhex("1234567890abcdef"),
                          plaintext=_NOW_IS_THE_TIME,
                          ciphertext=bytes.fromhex("e5c7cdde872bf27c"
                                                   "43e934008c389c0f"
                                                   "683788499a7c05f6"),
                          chunks=(CHUNK_NULL, 24)),
        KnownAnswerVector(key=bytes.fromhex("0123456789abcdef"),
                          iv=bytes.fromhex("1234567890abcdef"),
                          plaintext=_NOW_IS_THE_TIME,
                          ciphertext=bytes.fromhex("e5c7cdde872bf27c"
                                                   "43e934008c389c0f"
                                                   "683788499a7c05f6"),
                          chunks=(7, 9, CHUNK_EMPTY, 8)),
    )),
    PublishedTestSuite("AES_ECB", "AES_ECB", (
        KnownAnswerVector(key=_SP800_38A_KEY,
                          plaintext=_SP800_38A_PLAINTEXT,
                          ciphertext=bytes.fromhex("3ad77bb40d7a3660a89ecaf32466ef97"
                                                   "f5d3d58503b9699de785895a96fdbaaf"
                                                   "43b1cd7f598ece23881b00e3ed030688"
                                                   "7b0c785e27e8ad3f8223207104725dd4"),
                          chunks=(1, 15, CHUNK_EMPTY, 16, CHUNK_NULL, 32)),
        KnownAnswerVector(key=_SP800_38A_KEY,
                          plaintext=_SP800_38A_PLAINTEXT[:16],
                          ciphertext=bytes.fromhex("3ad77bb40d7a3660a89ecaf32466ef97")),
    )),
    PublishedTestSuite("AES_CBC", "AES_CBC", (
        KnownAnswerVector(key=_SP800_38A_KEY,
                          iv=_SP800_38A_IV,
                          plaintext=_SP800_38A_PLAINTEXT,
                          ciphertext=bytes.fromhex("7649abac8119b246cee98e9b12e9197d"
                                                   "5086cb9b507219ee95db113a917678b2"
                                                   "73bed6b8e3c1743b7116e69e22229516"
                                                   "3ff1caa1681fac09120eca307586e1a7"),
                          chunks=(17, CHUNK_NULL, 30, CHUNK_EMPTY, 17)),
    )),
)

_DES_IV = bytes.fromhex("1234567890abcdef")
_AES_IV = _SP800_38A_IV

GENERATED_TEST_SUITES: Tuple[GenerationSpec, ...] = (
    GenerationSpec("DES_ECB", "DES_ECB", "DES_KEY_GEN"),
    GenerationSpec("DES_CBC", "DES_CBC", "DES_KEY_GEN", iv=_DES_IV),
    GenerationSpec("DES_CBC_PAD", "DES_CBC_PAD", "DES_KEY_GEN", iv=_DES_IV),
    GenerationSpec("DES3_ECB", "DES3_ECB", "DES3_KEY_GEN"),
    GenerationSpec("DES3_CBC", "DES3_CBC", "DES3_KEY_GEN", iv=_DES_IV),
    GenerationSpec("DES3_CBC_PAD", "DES3_CBC_PAD", "DES3_KEY_GEN", iv=_DES_IV),
    GenerationSpec("AES_ECB", "AES_ECB", "AES_KEY_GEN"),
    GenerationSpec("AES_CBC", "AES_CBC", "AES_KEY_GEN", iv=_AES_IV),
    GenerationSpec("AES_CBC_PAD", "AES_CBC_PAD", "AES_KEY_GEN", iv=_AES_IV),
)


class CLIHandler:
    """Handles command-line interface."""

    @staticmethod
    def create_parser() -> argparse.ArgumentParser:
        """Create command line argument parser."""
        parser = argparse.ArgumentParser(
            description="Block cipher verification against a cryptographic token "
                        "(single-shot, multipart and key wrap round trips)",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
 # Run every suite, stop at the first failure
 %(prog)s

 # Keep going after failures and show each fragment count
 %(prog)s --no-stop --debug

 # Only AES suites, with DES key import forbidden by policy
 %(prog)s --suite aes --disallow-key-type DES
"""
        )

        parser.add_argument('--no-stop', action='store_true',
                            help='Continue after a failed or errored test case')
        parser.add_argument('--suite', help='Only run suites whose name contains this text')
        parser.add_argument('--max-request-size', type=int, default=BIG_REQUEST,
                            help=f'Largest vector in bytes (default: {BIG_REQUEST})')
        parser.add_argument('--disallow-key-type', action='append', default=[],
                            choices=['DES', 'DES3', 'AES'],
                            help='Refuse import of this key type (policy simulation)')

        verbosity = parser.add_mutually_exclusive_group()
        verbosity.add_argument('--debug', action='store_true', help='Debug-level logging')
        verbosity.add_argument('--quiet', action='store_true', help='Only log problems')

        which = parser.add_mutually_exclusive_group()
        which.add_argument('--published-only', action='store_true',
                           help='Only run known-answer suites')
        which.add_argument('--generated-only', action='store_true',
                           help='Only run generated round-trip suites')

        return parser

    @staticmethod
    def validate_args(args) -> None:
        """Validate command line arguments."""
        if args.max_request_size < MAX_BLOCK_SIZE:
            raise ConfigurationError(
                f"Max request size must be at least {MAX_BLOCK_SIZE} bytes")

    @staticmethod
    def build_config(args) -> RunConfig:
        return RunConfig(
            max_request_size=args.max_request_size,
            stop_on_failure=not args.no_stop,
            debug=args.debug,
            quiet=args.quiet,
            suite_filter=args.suite,
            disallowed_key_types=tuple(args.disallow_key_type),
            published_only=args.published_only,
            generated_only=args.generated_only,
        )


def configure_logging(config: RunConfig) -> None:
    if config.debug:
        level = logging.DEBUG
    elif config.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level,
                        datefmt="%Y-%m-%d %H:%M:%S",
                        format="%(asctime)-15s %(name)s[%(process)d]:%(levelname)s: %(message)s")


class Application:
    """Main application class."""

    def __init__(self):
        self.cli_handler = CLIHandler()
        self.reporter = VerdictReporter()

    def run(self, argv: Optional[Sequence[str]] = None) -> int:
        """Run the application and return the exit status."""
        parser = self.cli_handler.create_parser()
        args = parser.parse_args(argv)

        try:
            self.cli_handler.validate_args(args)
            config = self.cli_handler.build_config(args)
            configure_logging(config)
            logger.info("Stop on first failure: %s", config.stop_on_failure)

            with SoftTokenSession(disallowed_key_types=config.disallowed_key_types) as session:
                runner = SuiteRunner(session, config, self.reporter)
                ok = runner.run(PUBLISHED_TEST_SUITES, GENERATED_TEST_SUITES)

            self.reporter.print_result()
            return 0 if ok else 1

        except KeyboardInterrupt:
            print("\n⚠️ Run cancelled by user")
            return 1
        except ConfigurationError as e:
            print(f"❌ Error: {str(e)}", file=sys.stderr)
            return 1


def main():
    """Entry point."""
    app = Application()
    sys.exit(app.run())


if __name__ == "__main__":
    main()
