# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Entry points that run the cast propagation pass on ONNX models until it stops changing them."""

import copy
import os

import onnx

import castopt.onnx.utils as onnx_utils
from castopt.onnx.logging_config import logger

from .config import CastPropagationConfig
from .graph import CastGraph
from .graphsanitizer import GraphSanitizer
from .propagator import CastPropagator
from .referencerunner import ReferenceRunner, compare_outputs

__all__ = ["propagate_cast_ops", "propagate_cast_ops_from_path", "verify_outputs"]

# FP16 has about 3 significant decimal digits
VERIFY_RTOL = 1e-2
VERIFY_ATOL = 1e-2


def propagate_cast_ops(
    model: onnx.ModelProto, config: CastPropagationConfig | None = None, **kwargs
) -> onnx.ModelProto:
    """Minimize the number of Cast nodes of a mixed precision model.

    The pass is applied repeatedly until an invocation reports no change or
    ``config.max_iterations`` is reached. Shapes and types are re-inferred before each invocation
    and nodes are sorted topologically after it.

    Args:
        model: ONNX model to optimize. It is not modified.
        config: Pass configuration. Keyword arguments override its fields.
        **kwargs: Fields of :class:`CastPropagationConfig`.

    Returns:
        onnx.ModelProto: The optimized model.
    """
    config = config.model_copy(deep=True) if config is not None else CastPropagationConfig()
    config.update(kwargs)
    policy = config.get_policy()
    original_model = model

    model = copy.deepcopy(model)
    try:
        model = onnx_utils.check_model(model)
    except onnx.checker.ValidationError as e:
        logger.error(f"onnx.checker failed on input model {e}")
        raise Exception(
            "Cast propagation can only operate on valid ONNX models, but the input model is invalid. "
            "See log for details."
        )

    graph_sanitizer = GraphSanitizer(model)
    graph_sanitizer.sanitize()
    model = graph_sanitizer.model
    if graph_sanitizer.custom_ops:
        logger.debug(f"Custom ops are treated as boundary ops: {sorted(graph_sanitizer.custom_ops)}")

    num_casts_before = len(onnx_utils.get_cast_nodes(model))
    num_iterations = 0
    modified = True
    while modified and num_iterations < config.max_iterations:
        model = onnx_utils.infer_shapes(model)
        graph = CastGraph.from_onnx(model)
        modified = CastPropagator(graph, policy, config.low_precision_type).apply()
        num_iterations += 1
        if modified:
            model = onnx_utils.toposort_model(graph.to_onnx())
        logger.debug(f"Iteration {num_iterations}: modified={modified}")

    if modified:
        logger.warning(
            f"Cast propagation did not reach a fixed point after {num_iterations} iterations"
        )
        model = onnx_utils.infer_shapes(model)

    num_casts_after = len(onnx_utils.get_cast_nodes(model))
    logger.info(
        f"Cast nodes: {num_casts_before} -> {num_casts_after} after {num_iterations} iterations"
    )

    model = onnx_utils.check_model(model)
    if config.verify:
        verify_outputs(original_model, model)
    return model


def propagate_cast_ops_from_path(
    onnx_path: str, config: CastPropagationConfig | None = None, **kwargs
) -> onnx.ModelProto:
    """Load a model from disk and run :func:`propagate_cast_ops` on it."""
    if not os.path.exists(onnx_path):
        raise FileNotFoundError(f"ONNX model not found: {onnx_path}")
    model = onnx.load(onnx_path, load_external_data=True)
    return propagate_cast_ops(model, config, **kwargs)


def verify_outputs(reference_model: onnx.ModelProto, model: onnx.ModelProto) -> bool:
    """Run both models on the same random inputs and report the outputs that differ.

    Returns:
        True if every graph output matches within the FP16 tolerances.
    """
    ref_runner = ReferenceRunner(reference_model)
    ref_outputs = ref_runner.run()
    inputs = {name: ref_outputs[name] for name in ref_runner.input_names}
    outputs = ReferenceRunner(model).run(inputs)

    mismatches = compare_outputs(
        ref_outputs, outputs, ref_runner.output_names, rtol=VERIFY_RTOL, atol=VERIFY_ATOL
    )
    if mismatches:
        logger.warning(f"Outputs differ from the original model: {mismatches}")
        return False
    logger.info("All outputs match the original model")
    return True
