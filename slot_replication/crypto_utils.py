import logging
from typing import Dict, List, Optional, Tuple

import openfhe
import psutil

logger = logging.getLogger(__name__)

CT = openfhe.Ciphertext
CC = openfhe.CryptoContext


def create_crypto(
        crypto_hparams: Dict,
        rotations: List[int],
        bootstrap_hparams: Optional[Dict] = None
) -> Tuple[openfhe.CryptoContext, openfhe.KeyPair, int]:
    """
    Build a CKKS crypto context and generate the keys replication needs.

    Args:
        crypto_hparams: the crypto_params section of config.yml
        rotations: rotation offsets to generate keys for, see planner.get_rotation_amounts
        bootstrap_hparams: the crypto_bootstrap_params section, only read when run_bootstrap is set

    Returns:
        the crypto context, the key pair and the number of slots
    """
    ################################################
    # Setting the crypto parameters
    ################################################
    if openfhe.get_native_int() == 128:
        logger.info("Running in 128-bit mode")
        scaling_mod_size = crypto_hparams["128_scaling_mod_size"]
        first_mod = crypto_hparams["128_first_mod"]
    else:
        logger.info("Running in 64-bit mode")
        scaling_mod_size = crypto_hparams["64_scaling_mod_size"]
        first_mod = crypto_hparams["64_first_mod"]

    cc_params = openfhe.CCParamsCKKSRNS()
    sk_dist = getattr(openfhe, crypto_hparams["secret_key_dist"])
    cc_params.SetSecretKeyDist(sk_dist)

    # If running in bootstrap mode, this value gets overwritten!
    mult_depth = crypto_hparams["mult_depth"]
    run_bootstrap = crypto_hparams["run_bootstrap"]
    if run_bootstrap:
        level_budget = bootstrap_hparams["level_budget"]
        # Two iterations give about twice the precision of one
        num_iterations = bootstrap_hparams["num_iterations"]
        mult_depth = bootstrap_hparams["levels_available_after_bootstrap"] + (num_iterations - 1) \
            + openfhe.FHECKKSRNS.GetBootstrapDepth(level_budget, sk_dist)
        logger.info(f"Bootstrap final depth: {mult_depth}")

    cc_params.SetMultiplicativeDepth(mult_depth)
    cc_params.SetScalingModSize(scaling_mod_size)
    cc_params.SetFirstModSize(first_mod)
    cc_params.SetSecurityLevel(getattr(openfhe, crypto_hparams["security_level"]))
    if crypto_hparams["ring_dimensionality"]:
        cc_params.SetRingDim(crypto_hparams["ring_dimensionality"])
    if crypto_hparams["batch_size"]:
        cc_params.SetBatchSize(crypto_hparams["batch_size"])
    cc_params.SetScalingTechnique(getattr(openfhe, crypto_hparams["rescale_method"]))
    cc_params.SetKeySwitchTechnique(getattr(openfhe, crypto_hparams["keyswitch_method"]))
    cc_params.SetNumLargeDigits(crypto_hparams["num_large_digits"])

    logger.info("Generating CC")
    cc: openfhe.CryptoContext = openfhe.GenCryptoContext(cc_params)
    logger.info("Enabling Crypto Features")
    cc.Enable(openfhe.PKESchemeFeature.PKE)
    cc.Enable(openfhe.PKESchemeFeature.KEYSWITCH)
    cc.Enable(openfhe.PKESchemeFeature.LEVELEDSHE)
    cc.Enable(openfhe.PKESchemeFeature.ADVANCEDSHE)
    if run_bootstrap:
        cc.Enable(openfhe.PKESchemeFeature.FHE)

    num_slots = crypto_hparams["batch_size"] or int(cc.GetRingDimension() / 2)

    if run_bootstrap:
        cc.EvalBootstrapSetup(level_budget)
        print_memory_usage("after setup, before keygen")

    logger.info("Generating Keypair")
    keys: openfhe.KeyPair = cc.KeyGen()
    print_memory_usage("after keygen")
    logger.info("Generating Mult Key")
    cc.EvalMultKeyGen(keys.secretKey)
    print_memory_usage("after re-linearization key")
    if run_bootstrap:
        logger.info("Generating Bootstrap Keys")
        cc.EvalBootstrapKeyGen(keys.secretKey, num_slots)
        print_memory_usage("after bootstrapping keys")
    generate_rotation_keys(cc, keys.secretKey, rotations)
    print_memory_usage("after replication rotation keys")

    return cc, keys, num_slots


def generate_rotation_keys(cc: CC, secret_key: openfhe.PrivateKey, rotations: List[int]) -> None:
    if not rotations:
        logger.debug("No rotation keys needed")
        return
    logger.info(f"Generating {len(rotations)} rotation keys")
    logger.debug(f"Rotation amounts: {rotations}")
    cc.EvalRotateKeyGen(secret_key, list(rotations))


def memory_usage_gb() -> float:
    """Resident memory of this process in gigabytes"""
    return psutil.Process().memory_info().rss / (1024.0 ** 3)


def print_memory_usage(stage: str) -> float:
    memory_in_gb = memory_usage_gb()
    logger.info(f"Memory usage at {stage}: {memory_in_gb:.3f} gigabytes")
    return memory_in_gb
