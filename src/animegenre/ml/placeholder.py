"""Untrained stand-in classifier used when the real artifact cannot be loaded.

The graph is global average pooling followed by a dense softmax layer:

    input [N, S, S, 3] -> ReduceMean(axes=1,2) -> MatMul -> Add -> Softmax

It accepts the same input shape as the real model and produces one
probability per label, so the rest of the pipeline stays exercisable.
"""

from __future__ import annotations

import numpy as np
from onnx import TensorProto, checker, helper, numpy_helper

PLACEHOLDER_OPSET = 13
PLACEHOLDER_IR_VERSION = 8
INPUT_NAME = "input"
OUTPUT_NAME = "probabilities"


def build_placeholder_model(image_size: int, num_labels: int, seed: int = 0) -> bytes:
    """Build a serialized ONNX classifier with random dense weights.

    Args:
        image_size: Side length S of the square model input.
        num_labels: Width of the output vector.
        seed: Seed for the dense layer weights.

    Returns:
        The model serialized as ONNX protobuf bytes.
    """
    if image_size < 1 or num_labels < 1:
        raise ValueError("image_size and num_labels must be positive")

    rng = np.random.default_rng(seed)
    weights = rng.normal(0.0, 1.0, size=(3, num_labels)).astype(np.float32)
    bias = np.zeros(num_labels, dtype=np.float32)

    graph = helper.make_graph(
        nodes=[
            helper.make_node("ReduceMean", [INPUT_NAME], ["pooled"], axes=[1, 2], keepdims=0),
            helper.make_node("MatMul", ["pooled", "dense_w"], ["logits_raw"]),
            helper.make_node("Add", ["logits_raw", "dense_b"], ["logits"]),
            helper.make_node("Softmax", ["logits"], [OUTPUT_NAME], axis=-1),
        ],
        name="placeholder_classifier",
        inputs=[
            helper.make_tensor_value_info(INPUT_NAME, TensorProto.FLOAT, ["batch", image_size, image_size, 3]),
        ],
        outputs=[
            helper.make_tensor_value_info(OUTPUT_NAME, TensorProto.FLOAT, ["batch", num_labels]),
        ],
        initializer=[
            numpy_helper.from_array(weights, name="dense_w"),
            numpy_helper.from_array(bias, name="dense_b"),
        ],
    )

    model = helper.make_model(
        graph,
        producer_name="animegenre",
        opset_imports=[helper.make_opsetid("", PLACEHOLDER_OPSET)],
    )
    # Newer onnx releases default to an IR version onnxruntime may not accept yet.
    model.ir_version = PLACEHOLDER_IR_VERSION
    checker.check_model(model)
    return model.SerializeToString()
