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

"""Configuration of the cast propagation pass."""

from collections import namedtuple

import numpy as np
from onnx import TensorProto
from pydantic import field_validator

from castopt.config import CastoptBaseConfig, CastoptField

from .policy import OpClassificationPolicy

__all__ = ["PRECISION_MAP", "CastPropagationConfig", "PrecisionTypes", "get_precision"]

PrecisionTypes = namedtuple("PrecisionTypes", ["onnx_type", "numpy_type", "str_short", "str_full"])

PRECISION_MAP = {
    "fp32": PrecisionTypes(TensorProto.FLOAT, np.float32, "fp32", "float32"),
    "fp16": PrecisionTypes(TensorProto.FLOAT16, np.float16, "fp16", "float16"),
    "bf16": PrecisionTypes(TensorProto.BFLOAT16, None, "bf16", "bfloat16"),
}

# Precision names accepted as the narrow precision of the pass.
LOW_PRECISION_TYPES = ["fp16", "bf16"]


def get_precision(onnx_type: int) -> PrecisionTypes | None:
    """Returns the precision entry for an ONNX element type, or None if it is not a float type."""
    return next((p for p in PRECISION_MAP.values() if p.onnx_type == onnx_type), None)


class CastPropagationConfig(CastoptBaseConfig):
    """Options of :func:`propagate_cast_ops <castopt.onnx.cast_propagation.convert.propagate_cast_ops>`."""

    low_precision_type: str = CastoptField(
        default="fp16",
        title="Narrow precision.",
        description="Precision that casts convert to and from FP32. One of 'fp16' or 'bf16'.",
    )
    max_iterations: int = CastoptField(
        default=100,
        title="Maximum number of pass invocations.",
        description="The pass is re-applied until it reports no change or this limit is reached.",
    )
    extra_pass_through_ops: list[str] = CastoptField(
        default=[],
        title="Additional pass-through op types.",
        description="Op types added to the default list of precision-agnostic ops.",
    )
    extra_precision_safe_ops: list[str] = CastoptField(
        default=[],
        title="Additional precision-safe op types.",
        description="Op types added to the default list of ops that may run in either precision.",
    )
    verify: bool = CastoptField(
        default=False,
        title="Verify outputs.",
        description="Run the original and the optimized model with ONNX Runtime on random inputs "
        "and report mismatching outputs.",
    )

    @field_validator("low_precision_type")
    @classmethod
    def _check_low_precision_type(cls, value: str) -> str:
        if value not in LOW_PRECISION_TYPES:
            raise ValueError(f"Unsupported precision type: {value}")
        return value

    @field_validator("max_iterations")
    @classmethod
    def _check_max_iterations(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"max_iterations must be positive, got {value}")
        return value

    def get_policy(self) -> OpClassificationPolicy:
        """Returns the default op classification extended with the extra op types of this config."""
        return OpClassificationPolicy().with_extra_ops(
            self.extra_pass_through_ops, self.extra_precision_safe_ops
        )
