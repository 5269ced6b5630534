from __future__ import annotations

import numpy as np


N_PROTOS = 32
PROTO_SIZE = 160


def generate_mask(proto_masks: np.ndarray, mask_coeffs: np.ndarray, threshold: float = 0.5) -> np.ndarray:
    """
    Probability mask of one detection from YOLO-seg outputs.

    sigmoid(sum_k coeffs[k] * protos[k]); probabilities below `threshold`
    are set to 0. `proto_masks` is (32,160,160) (a leading batch axis of 1
    is accepted), `mask_coeffs` is (32,). Returns (160,160) float32.
    """
    protos = np.asarray(proto_masks, dtype=np.float32)
    if protos.ndim == 4 and protos.shape[0] == 1:
        protos = protos[0]
    if protos.ndim != 3:
        raise ValueError(f"proto_masks must be (K,H,W), got shape {protos.shape}")
    coeffs = np.asarray(mask_coeffs, dtype=np.float32).reshape(-1)
    if coeffs.size != protos.shape[0]:
        raise ValueError(f"expected {protos.shape[0]} mask coefficients, got {coeffs.size}")

    k, h, w = protos.shape
    logits = (coeffs @ protos.reshape(k, h * w)).reshape(h, w)
    prob = 1.0 / (1.0 + np.exp(-np.clip(logits, -50.0, 50.0)))
    prob = prob.astype(np.float32)
    prob[prob < float(threshold)] = 0.0
    return prob
