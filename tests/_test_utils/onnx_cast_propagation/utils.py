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

import onnx
import onnx_graphsurgeon as gs
from onnx import TensorProto, helper

import castopt.onnx.utils as onnx_utils
from castopt.onnx.cast_propagation.graph import CastGraph
from castopt.onnx.cast_propagation.policy import OpClassificationPolicy

FP32 = TensorProto.FLOAT
FP16 = TensorProto.FLOAT16
TRACKED_TYPES = [TensorProto.FLOAT, TensorProto.FLOAT16, TensorProto.BFLOAT16]
NARROW_TYPES = [TensorProto.FLOAT16, TensorProto.BFLOAT16]


def make_tensor(name, elem_type=FP32, shape=(2, 3)):
    return helper.make_tensor_value_info(name, elem_type, list(shape))


def make_cast(name, inp, out, to):
    return helper.make_node("Cast", [inp], [out], name=name, to=to)


def make_model(nodes, inputs, outputs, initializers=(), check=True):
    graph = helper.make_graph(nodes, "cast_model", inputs, outputs, list(initializers))
    model = helper.make_model(graph, producer_name="cast_model")
    model.opset_import[0].version = 20
    model.ir_version = 10
    if check:
        onnx.checker.check_model(model)
    return model


def build_graph(model: onnx.ModelProto) -> CastGraph:
    return CastGraph.from_onnx(onnx_utils.infer_shapes(model))


def node_id(graph: CastGraph, name: str) -> int:
    node = graph.find_node(name)
    assert node is not None, f"Node {name} not found"
    return node.id


def value_id(graph: CastGraph, name: str) -> int:
    value = graph.find_value(name)
    assert value is not None, f"Value {name} not found"
    return value.id


def op_types(model: onnx.ModelProto) -> list[str]:
    return [node.op_type for node in model.graph.node]


def count_casts(model: onnx.ModelProto) -> int:
    return op_types(model).count("Cast")


def assert_no_cancelling_casts(model: onnx.ModelProto):
    graph = gs.import_onnx(model)
    for node in graph.nodes:
        if node.op != "Cast" or node.attrs["to"] not in TRACKED_TYPES:
            continue
        for tensor in node.outputs:
            for child in tensor.outputs:
                assert child.op != "Cast" or child.attrs["to"] not in TRACKED_TYPES, (
                    f"Cast '{child.name}' directly follows cast '{node.name}'"
                )
    return True


def assert_no_duplicate_siblings(model: onnx.ModelProto):
    graph = gs.import_onnx(model)
    for tensor in graph.tensors().values():
        targets = [node.attrs["to"] for node in tensor.outputs if node.op == "Cast"]
        assert len(targets) == len(set(targets)), (
            f"Tensor '{tensor.name}' feeds several casts with the same target"
        )
    return True


def assert_boundary_inputs_cast(
    model: onnx.ModelProto, policy: OpClassificationPolicy | None = None
):
    """Checks that every narrow value a boundary op reads is produced by a Cast node.

    Graph inputs and initializers have no producer and are not checked.
    """
    policy = policy or OpClassificationPolicy()
    graph = build_graph(model)
    for node in graph.nodes:
        if node.op_type == "Cast" or not policy.is_boundary(node.op_type):
            continue
        for value_id in node.inputs:
            value = graph.value(value_id)
            producer = graph.get_producer(value_id)
            if value.elem_type not in NARROW_TYPES or producer is None:
                continue
            assert producer.op_type == "Cast", (
                f"Boundary op '{node.name}' reads '{value.name}' from '{producer.name}' "
                "instead of a cast"
            )
    return True
