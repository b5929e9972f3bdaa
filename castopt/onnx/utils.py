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

"""Utility functions related to onnx."""

import os
import tempfile
import uuid
from typing import Any

import onnx
import onnx_graphsurgeon as gs
from onnx.helper import get_attribute_value

from castopt.onnx.logging_config import logger


def get_input_names(model: onnx.ModelProto, external_inputs_only: bool = True) -> list[str]:
    """This function returns the inputs names of the given onnx model."""
    initializer_names = {initializer.name for initializer in model.graph.initializer}
    return [
        inp.name
        for inp in model.graph.input
        if not external_inputs_only or inp.name not in initializer_names
    ]


def get_output_names(model: onnx.ModelProto) -> list[str]:
    """This function returns the output names of the given onnx model."""
    return [output.name for output in model.graph.output]


def get_node_names(model: onnx.ModelProto) -> list[str]:
    """This function returns all node names from the given onnx model."""
    return [node.name for node in model.graph.node]


def name_onnx_nodes(graph: onnx.GraphProto) -> bool:
    """Assigns name to the onnx nodes if not present and return the modified status."""
    is_modified = False
    node_names = {node.name for node in graph.node}
    start_id = len(node_names)
    for node in graph.node:
        if not node.name:
            new_name = f"{node.op_type}_{start_id}"
            while new_name in node_names:
                start_id += 1
                new_name = f"{node.op_type}_{start_id}"

            node.name = new_name
            node_names.add(new_name)
            is_modified = True

    return is_modified


def check_model(model: onnx.ModelProto) -> onnx.ModelProto:
    """Checks if the given model is valid."""
    if model.ByteSize() > (2 * (1024**3)):  # 2GB limit
        with tempfile.TemporaryDirectory() as temp_dir:
            # ONNX also looks in CWD, so we need to use a unique id
            unique_id = str(uuid.uuid4())[:8]
            onnx_tmp_path = os.path.join(temp_dir, f"model_{unique_id}.onnx")
            save_onnx(model, onnx_tmp_path, save_as_external_data=True)
            onnx.checker.check_model(onnx_tmp_path)
            return onnx.load(onnx_tmp_path)
    else:
        onnx.checker.check_model(model)
        return model


def infer_shapes(model: onnx.ModelProto, **kwargs):
    """Infers shapes of the onnx graph, handles large models."""
    if model.ByteSize() > (2 * (1024**3)):  # 2GB limit
        with tempfile.TemporaryDirectory() as temp_dir:
            # ONNX also looks in CWD, so we need to use a unique id
            unique_id = str(uuid.uuid4())[:8]
            onnx_orig_path = os.path.join(temp_dir, f"model_{unique_id}.onnx")
            onnx_inferred_path = os.path.join(temp_dir, f"inferred_{unique_id}.onnx")
            save_onnx(model, onnx_orig_path, save_as_external_data=True)
            onnx.shape_inference.infer_shapes_path(onnx_orig_path, onnx_inferred_path, **kwargs)
            model = onnx.load(onnx_inferred_path)
        return model
    else:
        return onnx.shape_inference.infer_shapes(model, **kwargs)


def toposort_model(model: onnx.ModelProto) -> onnx.ModelProto:
    """Reorders the nodes of the given model topologically.

    Node names must be unique. The ordering is computed with onnx-graphsurgeon and then applied to
    the original protos, so metadata, opsets and initializers of the model are left untouched.
    """
    graph = gs.import_onnx(model)
    graph.toposort()
    order = {node.name: idx for idx, node in enumerate(graph.nodes)}
    assert len(order) == len(model.graph.node), "Node names must be unique to sort the graph"

    sorted_nodes = sorted(model.graph.node, key=lambda node: order[node.name])
    del model.graph.node[:]
    model.graph.node.extend(sorted_nodes)
    return model


def get_cast_nodes(model: onnx.ModelProto) -> list[onnx.NodeProto]:
    """Returns all Cast nodes of the given model."""
    return [node for node in model.graph.node if node.op_type == "Cast"]


def save_onnx(model: onnx.ModelProto, onnx_path: str, save_as_external_data: bool = False):
    """Save an ONNX model to given path. If a model is larger than 2GB, will save with external data."""
    size_threshold = 2 * (1024**3)  # 2GB
    try:
        model_proto = model.SerializeToString()
        model_size = len(model_proto)
        save_as_external_data = save_as_external_data or model_size > size_threshold
        logger.debug(
            f"Model size: {model_size} bytes, using external data: {save_as_external_data}"
        )

    except ValueError as e:
        if "Message onnx.ModelProto exceeds maximum protobuf size of 2GB" in str(e):
            logger.warning("Model exceeds 2GB limit, switching to external data storage")
            save_as_external_data = True
        else:
            logger.error(f"Failed to serialize model: {e!s}")
            raise

    if save_as_external_data:
        external_data_path = os.path.basename(onnx_path) + "_data"
        if os.path.exists(external_data_path):
            logger.warning(f"Removing existing external data file: {external_data_path}")
            os.remove(external_data_path)

        onnx.save_model(
            model,
            onnx_path,
            save_as_external_data=True,
            all_tensors_to_one_file=True,
            location=external_data_path,
            size_threshold=1024,
        )
    else:
        onnx.save(model, onnx_path)


def get_attribute(node: onnx.NodeProto, attr_name: str) -> Any:
    """Returns the value of the specified attribute."""
    for attr in node.attribute:
        if attr.name == attr_name:
            return get_attribute_value(attr)
    raise ValueError(f"Attribute {attr_name} not found in node {node.name}")
