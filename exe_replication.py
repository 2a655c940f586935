################################################
# Runner for slot replication
#   Encrypts the pattern 1, 2, ..., P repeated to fill every slot, then
#   replicates it into P ciphertexts [1,1,...,1], [2,2,...,2], ... and checks
#   each of them after decryption.
#
#   Usage: python exe_replication.py [shape_index]
#   With the real ring dimension (2^16) this can take 15-20 minutes.
################################################
import logging
import sys
import time
from typing import Dict, List

import pandas as pd
import yaml

from slot_replication.crypto_utils import create_crypto, print_memory_usage
from slot_replication.planner import get_rotation_amounts, num_outputs
from slot_replication.replicator import SlotReplicator, batch_replicate
from slot_replication.utils import check_replica, encrypt_pattern, make_test_pattern


def try_tree(degrees: List[int], config: Dict) -> pd.DataFrame:
    logger = logging.getLogger(__name__)
    rep_conf = config["replication_params"]
    tol = rep_conf["tolerance"]
    timings = []

    logger.info(f"degrees: {degrees}")
    n_outputs = num_outputs(degrees)

    # The rotation keys that we need
    rotations = get_rotation_amounts(degrees)
    logger.info(f"rotation amounts: {rotations}")

    start = time.perf_counter()
    cc, kp, num_slots = create_crypto(
        crypto_hparams=config["crypto_params"],
        rotations=rotations,
        bootstrap_hparams=config["crypto_bootstrap_params"]
    )
    timings.append(("setup + keygen", time.perf_counter() - start, print_memory_usage("setup + keygen")))

    # The input holds a pattern of length n_outputs, repeated to fill up all the slots
    if num_slots % n_outputs != 0:
        raise Exception(f"Tree shape {degrees} does not divide the {num_slots} slots")
    n_reps = num_slots // n_outputs

    start = time.perf_counter()
    replicator = SlotReplicator(cc, degrees, n_reps, num_slots=num_slots)
    timings.append(("build replicator", time.perf_counter() - start, print_memory_usage("build replicator")))

    pattern = make_test_pattern(n_outputs)
    ct = encrypt_pattern(cc, pattern, num_slots, kp)

    # The same replicator object is reused for every repetition
    for k in range(rep_conf["repetitions"]):
        elapsed = 0.0
        for i in range(n_outputs):
            start = time.perf_counter()
            ct_i = replicator.init(ct) if i == 0 else replicator.next_replica()
            elapsed += time.perf_counter() - start
            if ct_i is None:
                raise Exception(f"Replicator stopped after {i} of {n_outputs} replicas")
            check_replica(cc, ct_i, kp, num_slots, pattern[i], tol)
        timings.append((f"replication #{k + 1}", elapsed, print_memory_usage(f"last replica #{k + 1}")))

    # One-shot alternative: builds a replicator and collects every replica
    start = time.perf_counter()
    outputs = batch_replicate(ct, degrees, n_reps, cc=cc, num_slots=num_slots)
    elapsed = time.perf_counter() - start
    if len(outputs) != n_outputs:
        raise Exception(f"Expected {n_outputs} replicas. Received: {len(outputs)}")
    for i, ct_i in enumerate(outputs):
        check_replica(cc, ct_i, kp, num_slots, pattern[i], tol)
    timings.append(("batch replication", elapsed, print_memory_usage("batch replication")))

    summary = pd.DataFrame(timings, columns=["stage", "seconds", "memory_gb"])
    summary.insert(0, "degrees", str(degrees))
    return summary


if __name__ == '__main__':

    with open("config.yml", "r") as f:
        config = yaml.safe_load(f)

    logging.basicConfig(format="[%(filename)s:%(lineno)s - %(funcName)s] %(message)s",
                        level=getattr(logging, config["logging_level"]))
    logger = logging.getLogger(__name__)

    logger.debug("Crypto Params")
    logger.debug(config["crypto_params"])
    if config["crypto_params"]["run_bootstrap"]:
        logger.info("Running with Bootstrap")
        logger.debug(config["crypto_bootstrap_params"])
    logger.debug("Replication Params")
    logger.debug(config["replication_params"])

    tree_shapes = config["replication_params"]["tree_shapes"]
    idx = int(sys.argv[1]) if len(sys.argv) > 1 else 0
    if idx < 0 or idx >= len(tree_shapes):
        idx = 0

    summary = try_tree(tree_shapes[idx], config)
    print(summary.to_string(index=False))
    if config["replication_params"]["summary_csv"]:
        summary.to_csv(config["replication_params"]["summary_csv"], index=False)
