from typing import List, Sequence

import numpy as np
import openfhe

CT = openfhe.Ciphertext
CC = openfhe.CryptoContext


def get_vec_row_cloned(in_vec: Sequence, num_slots: int) -> List:
    """
    Repeat in_vec back to back until it fills num_slots, the layout replication expects
    """
    n = len(in_vec)
    if n == 0 or num_slots % n != 0:
        raise Exception(f"Pattern of length {n} does not evenly fill {num_slots} slots")
    if num_slots == n:
        return list(in_vec)
    num_clones = num_slots // n

    container = []
    for i in range(num_clones):
        container.extend(in_vec)
    return container


def make_test_pattern(n_outputs: int) -> List[float]:
    """The values 1, 2, ..., n_outputs"""
    return [float(i + 1) for i in range(n_outputs)]


def encrypt_pattern(cc: CC, pattern: Sequence[float], num_slots: int, kp: openfhe.KeyPair) -> CT:
    cloned = get_vec_row_cloned(pattern, num_slots)
    return cc.Encrypt(kp.publicKey, cc.MakeCKKSPackedPlaintext(cloned))


def get_raw_value_from_ct(cc: CC, ct: CT, kp: openfhe.KeyPair, length: int) -> List[float]:
    pt: openfhe.Plaintext = cc.Decrypt(ct, kp.secretKey)
    pt.SetLength(length)
    return pt.GetRealPackedValue()


def is_constant(values: Sequence[float], expected: float, tol: float = 1e-5) -> bool:
    """Whether every slot is within tol of expected"""
    return bool(np.allclose(np.asarray(values), expected, rtol=0.0, atol=tol))


def check_replica(cc: CC, ct: CT, kp: openfhe.KeyPair, num_slots: int, expected: float, tol: float = 1e-5) -> None:
    values = get_raw_value_from_ct(cc, ct, kp, num_slots)
    if not is_constant(values, expected, tol):
        raise Exception(f"Replica should hold {expected} in every slot. Received: {values[:8]}...")
