################################################
# Planning for the replication tree
#   A degree sequence [d_1, ..., d_k] describes a tree whose level i fans out
#   into d_i children. The product of the degrees is the number of replicas.
#   Everything here is pure: no crypto context, no ciphertexts.
################################################
import logging
from typing import List, Sequence, Tuple

from slot_replication.errors import InvalidDegreeSequence

logger = logging.getLogger(__name__)

# Largest per-level digit, i.e. fan-out of at most 2**3 = 8
MAX_DIGIT = 3


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def validate_degrees(degrees: Sequence[int]) -> Tuple[int, ...]:
    """
    Check that every degree is an integer >= 2 and return the degrees as a tuple
    """
    checked = []
    for level, degree in enumerate(degrees):
        if isinstance(degree, bool) or int(degree) != degree:
            raise InvalidDegreeSequence(f"Degree at level {level} is not an integer: {degree!r}")
        if degree < 2:
            raise InvalidDegreeSequence(f"Degree at level {level} must be at least 2. Received: {degree}")
        checked.append(int(degree))
    return tuple(checked)


def num_outputs(degrees: Sequence[int]) -> int:
    """Number of replicas a degree sequence produces (1 for the empty sequence)"""
    n = 1
    for degree in degrees:
        n *= degree
    return n


def block_sizes(degrees: Sequence[int]) -> List[int]:
    """
    Sub-block sizes [s_1, ..., s_k] of the tree levels, where s_0 is the
        pattern length P and s_i = s_{i-1} / d_i. The last entry is always 1.
    """
    size = num_outputs(degrees)
    sizes = []
    for degree in degrees:
        size //= degree
        sizes.append(size)
    return sizes


def suggest_degrees(n_outputs: int) -> List[int]:
    """
    Suggest a degree sequence for replicating a pattern of n_outputs values.

    The exponent e = log2(n_outputs) is split into a non-increasing staircase of
        digits: the first is min(3, e), every next one is one less than the
        previous (capped by what is left of e), and once a digit reaches 1 it
        stays 1. Each digit v becomes a fan-out of 2**v.

    Args:
        n_outputs: number of distinct values P, a positive power of two

    Returns:
        the fan-outs, e.g. 128 -> [8, 4, 2, 2]
    """
    if not isinstance(n_outputs, int) or not is_power_of_two(n_outputs):
        raise InvalidDegreeSequence(f"Number of outputs must be a positive power of two. Received: {n_outputs}")

    remaining = n_outputs.bit_length() - 1
    degrees = []
    digit = MAX_DIGIT + 1
    while remaining > 0:
        digit = max(1, min(digit - 1, remaining))
        degrees.append(2 ** digit)
        remaining -= digit
    return degrees


def get_rotation_amounts(degrees: Sequence[int], n_reps: int = 1) -> List[int]:
    """
    All rotation offsets the replication tree for `degrees` will ever use.

    Level i with fan-out d_i and sub-block size s_i rotates by
        s_i, 2*s_i, ..., (d_i - 1)*s_i. The input pattern is periodic with
        period P, so the offsets do not depend on the repetition factor.
        These are the rotation keys to generate before replicating anything.

    Args:
        degrees: the degree sequence
        n_reps: repetition factor of the pattern; checked but does not change the result

    Returns:
        sorted list of distinct positive offsets
    """
    degrees = validate_degrees(degrees)
    if n_reps < 1:
        raise InvalidDegreeSequence(f"Repetition factor must be positive. Received: {n_reps}")

    amounts = set()
    for degree, size in zip(degrees, block_sizes(degrees)):
        amounts.update(t * size for t in range(1, degree))
    rotations = sorted(amounts)
    logger.debug(f"Degrees {list(degrees)} need {len(rotations)} rotation keys")
    return rotations
