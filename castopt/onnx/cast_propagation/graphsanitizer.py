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

"""Graph sanitization applied to ONNX models before cast propagation."""

import onnx

import castopt.onnx.utils as onnx_utils
from castopt.onnx.logging_config import logger


class GraphSanitizer:
    """A class for sanitizing ONNX model graphs before running the cast propagation pass."""

    def __init__(self, model: onnx.ModelProto) -> None:
        """Initialize GraphSanitizer.

        Args:
            model: ONNX model to sanitize, modified in place.
        """
        self.model = model
        self.standard_ops = {schema.name for schema in onnx.defs.get_all_schemas()}
        self.custom_ops: set[str] | None = None

    def sanitize(self) -> None:
        """Sanitize the model graph.

        Nodes get unique names, graph outputs without a producer are dropped and custom ops are
        reported. The pass treats custom ops as boundary ops unless they are added to the policy.
        """
        self.find_custom_nodes()
        self.remove_disconnected_outputs()
        self.ensure_graph_name_exists()
        onnx_utils.name_onnx_nodes(self.model.graph)
        self.ensure_unique_node_names()

    def find_custom_nodes(self) -> None:
        """Find custom nodes in the model.

        Scans through all nodes in the graph and logs any nodes that use custom operators
        that are not part of the standard ONNX operator set.
        """
        self.custom_ops = {
            node.op_type for node in self.model.graph.node if node.op_type not in self.standard_ops
        }
        if self.custom_ops:
            logger.info(f"Found custom operators: {sorted(self.custom_ops)}")

    def remove_disconnected_outputs(self) -> None:
        """Remove graph outputs that are neither produced by a node nor graph inputs."""
        graph = self.model.graph
        available = {name for node in graph.node for name in node.output}
        available.update(inp.name for inp in graph.input)
        available.update(init.name for init in graph.initializer)

        tensors_to_remove = [tensor for tensor in graph.output if tensor.name not in available]
        for tensor in tensors_to_remove:
            logger.debug(f"Found disconnected output: {tensor.name}")

        if tensors_to_remove:
            logger.warning(
                f"Found {len(tensors_to_remove)} disconnected outputs. Removing disconnected outputs from the graph."
            )

        for tensor in tensors_to_remove:
            graph.output.remove(tensor)

    def ensure_graph_name_exists(self) -> None:
        """Ensures that the model's name exists."""
        if not self.model.graph.name:
            self.model.graph.name = "model"

    def ensure_unique_node_names(self) -> None:
        """Renames nodes that share a name with an earlier node."""
        seen: set[str] = set()
        all_names = set(onnx_utils.get_node_names(self.model))
        for node in self.model.graph.node:
            if node.name in seen:
                idx = 1
                while f"{node.name}_{idx}" in all_names:
                    idx += 1
                new_name = f"{node.name}_{idx}"
                logger.debug(f"Renaming duplicate node {node.name} to {new_name}")
                node.name = new_name
                all_names.add(new_name)
            seen.add(node.name)
