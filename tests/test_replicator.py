import unittest

import numpy as np

from mock_backend import MockCryptoContext, MockKeyPair, encrypt_values
from slot_replication.errors import BackendOperationFailed, InvalidCiphertext, InvalidCursorState, \
    InvalidDegreeSequence
from slot_replication.planner import get_rotation_amounts, suggest_degrees
from slot_replication.replicator import CursorState, SlotReplicator, batch_replicate, level_mask
from slot_replication.utils import get_raw_value_from_ct, get_vec_row_cloned, make_test_pattern

N_SLOTS = 32


def make_context(degrees):
    cc = MockCryptoContext(N_SLOTS)
    cc.EvalRotateKeyGen(None, get_rotation_amounts(degrees))
    return cc


def decrypt(cc, ct):
    return np.asarray(get_raw_value_from_ct(cc, ct, MockKeyPair, N_SLOTS))


class TestLevelMask(unittest.TestCase):

    def test_selects_sub_block_in_every_block(self):
        mask = level_mask(16, parent_size=8, size=2, digit=1)
        self.assertEqual(mask, [0, 0, 1, 1, 0, 0, 0, 0] * 2)


class TestConstruction(unittest.TestCase):

    def test_get_degrees(self):
        degrees = suggest_degrees(N_SLOTS)
        replicator = SlotReplicator(make_context(degrees), degrees)
        self.assertEqual(replicator.get_degrees(), degrees)
        self.assertEqual(replicator.num_outputs, N_SLOTS)
        self.assertEqual(replicator.n_reps, 1)
        self.assertEqual(replicator.num_slots, N_SLOTS)
        self.assertEqual(replicator.state, CursorState.UNINITIALIZED)
        self.assertEqual(replicator.rotation_amounts, get_rotation_amounts(degrees))

    def test_mismatched_repetitions(self):
        cc = MockCryptoContext(N_SLOTS)
        with self.assertRaises(InvalidDegreeSequence):
            SlotReplicator(cc, [2, 2, 2, 2], 1)
        with self.assertRaises(InvalidDegreeSequence):
            SlotReplicator(cc, [8, 4], 2)
        with self.assertRaises(InvalidDegreeSequence):
            SlotReplicator(cc, [8, 4], 0)

    def test_degree_below_two(self):
        cc = MockCryptoContext(N_SLOTS)
        with self.assertRaises(InvalidDegreeSequence):
            SlotReplicator(cc, [32, 1])

    def test_no_ciphertext_operations_at_construction(self):
        cc = make_context([8, 4])
        SlotReplicator(cc, [8, 4])
        self.assertEqual(sum(cc.calls.values()), 0)


class TestFullReplication(unittest.TestCase):

    def check_shape(self, degrees):
        cc = make_context(degrees)
        pattern = make_test_pattern(N_SLOTS)
        ct = encrypt_values(cc, pattern)
        replicator = SlotReplicator(cc, degrees)
        replicas = list(replicator.replicate(ct))
        self.assertEqual(len(replicas), N_SLOTS)
        for i, ct_i in enumerate(replicas):
            np.testing.assert_allclose(decrypt(cc, ct_i), pattern[i], err_msg=f"degrees={degrees} i={i}")

    def test_suggested_shape(self):
        self.check_shape(suggest_degrees(N_SLOTS))

    def test_other_shapes(self):
        for degrees in ([2, 2, 2, 2, 2], [4, 8], [8, 2, 2], [2, 16], [32]):
            self.check_shape(degrees)

    def test_manual_cursor(self):
        degrees = [8, 2, 2]
        cc = make_context(degrees)
        ct = encrypt_values(cc, make_test_pattern(N_SLOTS))
        replicator = SlotReplicator(cc, degrees)
        for i in range(N_SLOTS):
            ct_i = replicator.init(ct) if i == 0 else replicator.next_replica()
            self.assertIsNotNone(ct_i)
            np.testing.assert_allclose(decrypt(cc, ct_i), i + 1)
        self.assertEqual(replicator.next_index, N_SLOTS)


class TestPartialReplication(unittest.TestCase):

    def test_periodic_input(self):
        cc = make_context([2, 2, 2, 2])
        pattern = make_test_pattern(16)
        ct = encrypt_values(cc, get_vec_row_cloned(pattern, N_SLOTS))
        replicas = batch_replicate(ct, [2, 2, 2, 2], 2)
        self.assertEqual(len(replicas), 16)
        for i, ct_i in enumerate(replicas):
            np.testing.assert_allclose(decrypt(cc, ct_i), pattern[i])

    def test_values_agree_modulo_pattern_length(self):
        # Pretend 1..32 repeats twice: replica i mixes the values i+1 and i+17
        cc = make_context(suggest_degrees(N_SLOTS))
        v = make_test_pattern(N_SLOTS)
        ct = encrypt_values(cc, v)
        replicator = SlotReplicator(cc, [2, 2, 2, 2], 2)
        replicas = list(replicator.replicate(ct))
        self.assertEqual(len(replicas), N_SLOTS // 2)
        for i, ct_i in enumerate(replicas):
            expected = int(round(v[i])) % (N_SLOTS // 2)
            got = np.rint(decrypt(cc, ct_i)).astype(int) % (N_SLOTS // 2)
            self.assertTrue(np.all(got == expected), msg=f"i={i}: {got}")


class TestCursorProtocol(unittest.TestCase):

    def setUp(self):
        self.degrees = [4, 2, 2, 2]
        self.cc = make_context(self.degrees)
        self.replicator = SlotReplicator(self.cc, self.degrees)

    def test_next_before_init(self):
        with self.assertRaises(InvalidCursorState):
            self.replicator.next_replica()

    def test_exhaustion_is_sticky(self):
        ct = encrypt_values(self.cc, make_test_pattern(N_SLOTS))
        count = len(list(self.replicator.replicate(ct)))
        self.assertEqual(count, N_SLOTS)
        for _ in range(3):
            self.assertIsNone(self.replicator.next_replica())
        self.assertEqual(self.replicator.state, CursorState.EXHAUSTED)
        self.assertEqual(self.replicator.resident_nodes, 0)

    def test_reuse_with_new_input(self):
        first = encrypt_values(self.cc, make_test_pattern(N_SLOTS))
        list(self.replicator.replicate(first))

        second_values = [float(x) for x in np.arange(N_SLOTS)[::-1] * 0.5]
        second = encrypt_values(self.cc, second_values)
        reused = [decrypt(self.cc, ct_i) for ct_i in self.replicator.replicate(second)]
        fresh = [decrypt(self.cc, ct_i) for ct_i in SlotReplicator(self.cc, self.degrees).replicate(second)]
        self.assertEqual(len(reused), len(fresh))
        for i, (a, b) in enumerate(zip(reused, fresh)):
            np.testing.assert_allclose(a, b)
            np.testing.assert_allclose(a, second_values[i])

    def test_init_discards_unfinished_traversal(self):
        first = encrypt_values(self.cc, make_test_pattern(N_SLOTS))
        self.replicator.init(first)
        for _ in range(5):
            self.replicator.next_replica()
        second = encrypt_values(self.cc, [10.0 * x for x in make_test_pattern(N_SLOTS)])
        ct_0 = self.replicator.init(second)
        self.assertEqual(self.replicator.next_index, 1)
        np.testing.assert_allclose(decrypt(self.cc, ct_0), 10.0)
        np.testing.assert_allclose(decrypt(self.cc, self.replicator.next_replica()), 20.0)

    def test_memory_bounded_by_depth(self):
        ct = encrypt_values(self.cc, make_test_pattern(N_SLOTS))
        ct_i = self.replicator.init(ct)
        while ct_i is not None:
            # The input plus one node per level
            self.assertLessEqual(self.replicator.resident_nodes, len(self.degrees) + 1)
            ct_i = self.replicator.next_replica()

    def test_ancestors_are_reused(self):
        ct = encrypt_values(self.cc, make_test_pattern(N_SLOTS))
        list(self.replicator.replicate(ct))
        # Every tree node is computed once: level l has prod(degrees[:l+1]) nodes
        nodes = rotations = 0
        width = 1
        for degree in self.degrees:
            width *= degree
            nodes += width
            rotations += width * (degree - 1)
        self.assertEqual(self.cc.calls["EvalMult"], nodes)
        self.assertEqual(self.cc.calls["EvalRotate"], rotations)
        self.assertLess(rotations, N_SLOTS * sum(d - 1 for d in self.degrees))

    def test_release_stops_traversal(self):
        ct = encrypt_values(self.cc, make_test_pattern(N_SLOTS))
        self.replicator.init(ct)
        self.replicator.release()
        self.assertEqual(self.replicator.resident_nodes, 0)
        self.assertIsNone(self.replicator.next_replica())

    def test_single_output_returns_input(self):
        cc = MockCryptoContext(N_SLOTS)
        replicator = SlotReplicator(cc, [], N_SLOTS)
        ct = encrypt_values(cc, [7.0] * N_SLOTS)
        self.assertIs(replicator.init(ct), ct)
        self.assertIsNone(replicator.next_replica())
        self.assertEqual(replicator.state, CursorState.EXHAUSTED)


class TestBackendFailures(unittest.TestCase):

    def test_missing_rotation_key(self):
        degrees = [8, 4]
        cc = MockCryptoContext(N_SLOTS, rotation_keys=[1, 2, 3])
        replicator = SlotReplicator(cc, degrees)
        ct = encrypt_values(cc, make_test_pattern(N_SLOTS))
        with self.assertRaises(BackendOperationFailed) as ctx:
            replicator.init(ct)
        self.assertEqual(ctx.exception.operation, "EvalRotate")
        self.assertEqual(ctx.exception.offset, 4)
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertEqual(replicator.resident_nodes, 0)

        # Generating the missing keys makes the same instance usable again
        cc.EvalRotateKeyGen(None, get_rotation_amounts(degrees))
        np.testing.assert_allclose(decrypt(cc, replicator.init(ct)), 1.0)

    def test_slot_check(self):
        cc = make_context([8, 4])
        replicator = SlotReplicator(cc, [8, 4], check_slots=True)
        small_cc = MockCryptoContext(16)
        with self.assertRaises(InvalidCiphertext):
            replicator.init(encrypt_values(small_cc, make_test_pattern(16)))
        self.assertIsNotNone(replicator.init(encrypt_values(cc, make_test_pattern(N_SLOTS))))


class TestBatchReplicate(unittest.TestCase):

    def test_matches_manual_cursor(self):
        degrees = [8, 2, 2]
        cc = make_context(degrees)
        ct = encrypt_values(cc, make_test_pattern(N_SLOTS))
        batch = batch_replicate(ct, degrees)
        replicator = SlotReplicator(cc, degrees)
        manual = []
        ct_i = replicator.init(ct)
        while ct_i is not None:
            manual.append(ct_i)
            ct_i = replicator.next_replica()
        self.assertEqual(len(batch), N_SLOTS)
        self.assertEqual(len(manual), N_SLOTS)
        for a, b in zip(batch, manual):
            np.testing.assert_allclose(decrypt(cc, a), decrypt(cc, b))

    def test_explicit_context(self):
        degrees = [2, 2, 2, 2, 2]
        cc = make_context(degrees)
        ct = encrypt_values(cc, make_test_pattern(N_SLOTS))
        batch = batch_replicate(ct, degrees, cc=cc, num_slots=N_SLOTS)
        np.testing.assert_allclose(decrypt(cc, batch[-1]), float(N_SLOTS))


if __name__ == "__main__":
    unittest.main()
