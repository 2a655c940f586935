################################################
# Depth-first slot replication
#   The input ciphertext holds a pattern of P values repeated R times across
#   its N slots (slot j holds value j mod P). Replica i holds value i in every
#   slot. The replicas are the leaves of a tree with fan-out degrees[l] at
#   level l; only the path from the root to the current leaf is kept alive.
#
#   NOTE: the periodicity of the input is a precondition and is never checked.
#       A non-periodic input gives well-defined but meaningless replicas.
################################################
import logging
from enum import Enum
from typing import Iterator, List, Optional, Sequence

import numpy as np
import openfhe

from slot_replication.errors import BackendOperationFailed, InvalidCiphertext, InvalidCursorState, \
    InvalidDegreeSequence
from slot_replication.planner import block_sizes, num_outputs, validate_degrees

logger = logging.getLogger(__name__)

CT = openfhe.Ciphertext
CC = openfhe.CryptoContext


class CursorState(Enum):
    UNINITIALIZED = 1
    ACTIVE = 2
    EXHAUSTED = 3


class _ReplicaNode(object):
    __slots__ = ("ciphertext", "digit")

    def __init__(self, ciphertext: CT, digit: int):
        self.ciphertext = ciphertext
        self.digit = digit


def level_mask(num_slots: int, parent_size: int, size: int, digit: int) -> List[float]:
    """
    Mask selecting sub-block `digit` (of length `size`) inside every block of length `parent_size`
    """
    positions = np.arange(num_slots)
    return ((positions % parent_size) // size == digit).astype(float).tolist()


class SlotReplicator(object):
    """
    Replicates the slots of CKKS ciphertexts one replica at a time.

    Build it once per degree sequence and reuse it for any number of
        ciphertexts:

        for ct_i in replicator.replicate(ct):
            ...

    or drive the cursor by hand with init() / next_replica().
    The rotation keys from planner.get_rotation_amounts(degrees) must exist
        in the crypto context before the first replica is requested.

    One instance runs one traversal at a time and is not thread safe.
        Distinct instances sharing a crypto context are independent.
    """

    def __init__(
            self,
            cc: CC,
            degrees: Sequence[int],
            n_reps: int = 1,
            num_slots: Optional[int] = None,
            check_slots: bool = False
    ):
        """
        Args:
            cc: the crypto context the input ciphertexts belong to
            degrees: fan-out of every tree level, the product is the number of replicas
            n_reps: how many times the pattern repeats in the input
            num_slots: slot capacity, defaults to half the ring dimension
            check_slots: debug mode, compare the slot count of every input against num_slots
        """
        self.cc = cc
        self._degrees = validate_degrees(degrees)
        if num_slots is None:
            num_slots = int(cc.GetRingDimension() / 2)
        self._num_slots = num_slots
        self._n_outputs = num_outputs(self._degrees)
        if n_reps < 1 or self._n_outputs * n_reps != num_slots:
            raise InvalidDegreeSequence(
                f"Degrees {list(self._degrees)} with {n_reps} repetitions do not fill {num_slots} slots"
            )
        self._n_reps = n_reps
        self.check_slots = check_slots

        # Per level: the rotation offsets, and one mask plaintext per digit
        self._rotations = []
        self._masks = []
        parent_size = self._n_outputs
        for degree, size in zip(self._degrees, block_sizes(self._degrees)):
            self._rotations.append([t * size for t in range(1, degree)])
            self._masks.append([
                cc.MakeCKKSPackedPlaintext(level_mask(num_slots, parent_size, size, digit))
                for digit in range(degree)
            ])
            parent_size = size

        self._path: List[_ReplicaNode] = []
        self._next_index = 0
        self._state = CursorState.UNINITIALIZED
        logger.debug(f"Replication plan: degrees {list(self._degrees)}, {self._n_outputs} outputs, "
                     f"{n_reps} repetitions, {num_slots} slots")

    def get_degrees(self) -> List[int]:
        return list(self._degrees)

    @property
    def num_outputs(self) -> int:
        return self._n_outputs

    @property
    def n_reps(self) -> int:
        return self._n_reps

    @property
    def num_slots(self) -> int:
        return self._num_slots

    @property
    def state(self) -> CursorState:
        return self._state

    @property
    def next_index(self) -> int:
        """Index of the replica the next call to next_replica() returns"""
        return self._next_index

    @property
    def resident_nodes(self) -> int:
        """Number of ciphertexts held on the path stack, the input included"""
        return len(self._path)

    @property
    def rotation_amounts(self) -> List[int]:
        return sorted({amount for level in self._rotations for amount in level})

    def init(self, ct: CT) -> Optional[CT]:
        """
        Start replicating `ct` and return replica 0.

        Any traversal still in progress is dropped. With a single output the
            input is returned as is.
        """
        if self.check_slots:
            slots = ct.GetSlots()
            if slots != self._num_slots:
                raise InvalidCiphertext(f"Ciphertext has {slots} slots, expected {self._num_slots}")
        self.release()
        logger.debug("Starting a new replication traversal")

        self._path.append(_ReplicaNode(ct, 0))
        try:
            for level in range(len(self._degrees)):
                self._descend(level, 0)
        except BackendOperationFailed:
            self._abandon()
            raise
        self._next_index = 1
        self._state = CursorState.ACTIVE
        return self._leaf()

    def next_replica(self) -> Optional[CT]:
        """
        Return the next replica in index order, or None once all of them were returned
        """
        if self._state is CursorState.UNINITIALIZED:
            raise InvalidCursorState("next_replica() called before init()")
        if self._state is CursorState.EXHAUSTED:
            return None

        # Mixed-radix increment, the deepest level is the least significant digit
        level = len(self._degrees) - 1
        while self._path[level + 1].digit == self._degrees[level] - 1:
            level -= 1
        digit = self._path[level + 1].digit + 1

        # Ancestors above `level` are reused as they are
        del self._path[level + 1:]
        try:
            self._descend(level, digit)
            for deeper in range(level + 1, len(self._degrees)):
                self._descend(deeper, 0)
        except BackendOperationFailed:
            self._abandon()
            raise
        self._next_index += 1
        return self._leaf()

    def replicate(self, ct: CT) -> Iterator[CT]:
        """Generator over all the replicas of `ct`, in index order"""
        ct_i = self.init(ct)
        while ct_i is not None:
            yield ct_i
            ct_i = self.next_replica()

    def release(self) -> None:
        """Drop every ciphertext held by the current traversal"""
        self._path.clear()
        if self._state is not CursorState.UNINITIALIZED:
            self._state = CursorState.EXHAUSTED

    def _abandon(self) -> None:
        # A half-built path cannot be resumed
        self._path.clear()
        self._state = CursorState.EXHAUSTED

    def _leaf(self) -> CT:
        leaf = self._path[-1].ciphertext
        if self._next_index == self._n_outputs:
            self.release()
            logger.debug(f"Replication traversal exhausted after {self._n_outputs} replicas")
        return leaf

    def _descend(self, level: int, digit: int) -> None:
        parent = self._path[-1].ciphertext
        self._path.append(_ReplicaNode(self._combine(parent, level, digit), digit))

    def _combine(self, ct: CT, level: int, digit: int) -> CT:
        """
        Keep sub-block `digit` of every block of the level and spread it over the whole block
        """
        try:
            masked = self.cc.EvalMult(ct, self._masks[level][digit])
        except RuntimeError as err:
            raise BackendOperationFailed("EvalMult", message=str(err)) from err

        result = masked
        for amount in self._rotations[level]:
            try:
                rotated = self.cc.EvalRotate(masked, amount)
            except RuntimeError as err:
                raise BackendOperationFailed("EvalRotate", offset=amount, message=str(err)) from err
            try:
                result = self.cc.EvalAdd(result, rotated)
            except RuntimeError as err:
                raise BackendOperationFailed("EvalAdd", message=str(err)) from err
        return result


def batch_replicate(
        ct: CT,
        degrees: Sequence[int],
        n_reps: int = 1,
        cc: Optional[CC] = None,
        num_slots: Optional[int] = None
) -> List[CT]:
    """
    Return all the replicas of `ct` as a list.

    Builds a throw-away SlotReplicator, so prefer reusing a SlotReplicator
        when many ciphertexts share the same degree sequence.
    """
    if cc is None:
        cc = ct.GetCryptoContext()
    replicator = SlotReplicator(cc, degrees, n_reps, num_slots=num_slots)
    return list(replicator.replicate(ct))
