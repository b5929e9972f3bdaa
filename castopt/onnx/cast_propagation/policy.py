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

"""Operator classification used to decide where casts may move."""

from collections.abc import Iterable

import pydantic
from pydantic import BaseModel, Field, model_validator

__all__ = ["DEFAULT_PASS_THROUGH_OPS", "DEFAULT_PRECISION_SAFE_OPS", "OpClassificationPolicy"]

# Ops that do not depend on the precision of their float tensors.
DEFAULT_PASS_THROUGH_OPS = frozenset(
    ["Transpose", "Reshape", "Gather", "Split", "Relu", "Where", "Dropout"]
)

# Ops whose result is acceptable in either precision.
DEFAULT_PRECISION_SAFE_OPS = frozenset(
    [
        "LayerNorm",
        "Gelu",
        "FastGelu",
        "Tanh",
        "MatMul",
        "MatAdd",
        "Add",
        "Sub",
        "Mul",
        "Div",
        "Neg",
        "Gemm",
        "FusedMatMul",
        "FusedGemm",
    ]
)


class OpClassificationPolicy(BaseModel):
    """Immutable mapping from op type to pass-through, precision-safe or boundary.

    Op types in neither set are boundary ops: casts are never moved across them.
    """

    model_config = pydantic.ConfigDict(frozen=True, extra="forbid")

    pass_through_ops: frozenset[str] = Field(
        default=DEFAULT_PASS_THROUGH_OPS,
        description="Op types that casts may move through in either direction.",
    )
    precision_safe_ops: frozenset[str] = Field(
        default=DEFAULT_PRECISION_SAFE_OPS,
        description="Op types that may run in either precision.",
    )

    @model_validator(mode="after")
    def _check_disjoint(self):
        overlap = self.pass_through_ops & self.precision_safe_ops
        if overlap:
            raise ValueError(
                f"Op types cannot be both pass-through and precision-safe: {sorted(overlap)}"
            )
        return self

    def is_pass_through(self, op_type: str) -> bool:
        return op_type in self.pass_through_ops

    def is_precision_safe(self, op_type: str) -> bool:
        return op_type in self.precision_safe_ops

    def is_boundary(self, op_type: str) -> bool:
        return not self.is_pass_through(op_type) and not self.is_precision_safe(op_type)

    def with_extra_ops(
        self,
        pass_through_ops: Iterable[str] = (),
        precision_safe_ops: Iterable[str] = (),
    ) -> "OpClassificationPolicy":
        """Returns a new policy extended with the given op types."""
        return OpClassificationPolicy(
            pass_through_ops=self.pass_through_ops | frozenset(pass_through_ops),
            precision_safe_ops=self.precision_safe_ops | frozenset(precision_safe_ops),
        )
