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

import numpy as np
import onnx
import pytest
from _test_utils.onnx_cast_propagation.utils import (
    FP16,
    FP32,
    build_graph,
    make_cast,
    make_model,
    make_tensor,
    value_id,
)
from onnx import TensorProto, helper, numpy_helper

import castopt.onnx.utils as onnx_utils
from castopt.onnx.cast_propagation.graph import CastGraph
from castopt.onnx.cast_propagation.propagator import CastPropagator, get_cast_to_type
from castopt.onnx.logging_config import configure_logging

configure_logging("DEBUG")


def _names(graph, value_ids):
    return sorted(graph.value(vid).name for vid in value_ids)


def _consumer_names(graph, name):
    return sorted(node.name for node in graph.get_consumers(value_id(graph, name)))


def _cast_names(graph):
    return sorted(node.name for node in graph.nodes if node.op_type == "Cast")


####################################################################################################
# Cast insertion
####################################################################################################
@pytest.fixture
def fan_out_graph():
    # X -> Sigmoid -> s -> Exp -> Y1
    #                   \-> Exp -> Y2
    nodes = [
        helper.make_node("Sigmoid", ["X"], ["s"], name="sig"),
        helper.make_node("Exp", ["s"], ["Y1"], name="exp1"),
        helper.make_node("Exp", ["s"], ["Y2"], name="exp2"),
    ]
    model = make_model(nodes, [make_tensor("X")], [make_tensor("Y1"), make_tensor("Y2")])
    return build_graph(model)


def test_invalid_low_precision_type(fan_out_graph):
    with pytest.raises(ValueError, match="Unsupported precision type: fp8"):
        CastPropagator(fan_out_graph, low_precision_type="fp8")


def test_insert_cast_on_consumer_side(fan_out_graph):
    graph = fan_out_graph
    propagator = CastPropagator(graph)
    s = value_id(graph, "s")

    casts = propagator.insert_casts([s], FP16)

    assert len(casts) == 1
    cast = casts[0]
    assert cast.name == "s_cast_to_fp16"
    assert get_cast_to_type(cast) == FP16
    assert cast.inputs == [s]
    new_value = graph.value(cast.outputs[0])
    assert new_value.name == "s_cast_to_fp16"
    assert new_value.elem_type == FP16
    assert graph.get_producer(s).name == "sig"
    assert _consumer_names(graph, "s") == ["s_cast_to_fp16"]
    assert _consumer_names(graph, "s_cast_to_fp16") == ["exp1", "exp2"]
    graph.check_consistency()


def test_insert_cast_on_producer_side(fan_out_graph):
    graph = fan_out_graph
    propagator = CastPropagator(graph)
    s = value_id(graph, "s")

    casts = propagator.insert_casts([s], FP32)

    assert len(casts) == 1
    cast = casts[0]
    assert cast.outputs == [s]
    assert graph.get_producer(s) is cast
    new_value = graph.value(cast.inputs[0])
    assert new_value.name == "s_fp16"
    assert new_value.elem_type == FP16
    assert graph.get_producer(new_value.id).name == "sig"
    assert _consumer_names(graph, "s") == ["exp1", "exp2"]
    graph.check_consistency()


def test_insert_cast_skips_input_already_at_target(fan_out_graph):
    graph = fan_out_graph
    num_nodes = len(graph.nodes)
    assert CastPropagator(graph).insert_casts([value_id(graph, "X")], FP32) == []
    assert len(graph.nodes) == num_nodes


def test_insert_cast_skips_non_float_values():
    shape = numpy_helper.from_array(np.array([3, 2], dtype=np.int64), name="shape")
    nodes = [helper.make_node("Reshape", ["X", "shape"], ["Y"], name="reshape")]
    model = make_model(nodes, [make_tensor("X")], [make_tensor("Y", shape=(3, 2))], [shape])
    graph = build_graph(model)
    assert CastPropagator(graph).insert_casts([value_id(graph, "shape")], FP16) == []


def test_insert_cast_skips_placeholders():
    max_init = numpy_helper.from_array(np.array(6.0, dtype=np.float32), name="max")
    nodes = [helper.make_node("Clip", ["X", "", "max"], ["Y"], name="clip")]
    graph = build_graph(make_model(nodes, [make_tensor("X")], [make_tensor("Y")], [max_init]))
    placeholder = graph.find_node("clip").inputs[1]
    assert CastPropagator(graph).insert_casts([placeholder], FP16) == []


def test_insert_cast_rejects_graph_input_that_is_graph_output():
    nodes = [helper.make_node("Sigmoid", ["X"], ["Y"], name="sig")]
    model = make_model(nodes, [make_tensor("X")], [make_tensor("Y"), make_tensor("X")], check=False)
    graph = CastGraph.from_onnx(model)
    with pytest.raises(ValueError, match="both a graph input and output"):
        CastPropagator(graph).insert_casts([value_id(graph, "X")], FP16)


def test_insert_cast_rejects_untracked_target(fan_out_graph):
    with pytest.raises(ValueError, match="Unsupported precision type"):
        CastPropagator(fan_out_graph).insert_casts([value_id(fan_out_graph, "s")], TensorProto.INT32)


def test_insert_then_remove_restores_topology(fan_out_graph):
    graph = fan_out_graph
    propagator = CastPropagator(graph)
    edges_before = {(edge.producer, edge.consumer) for edge in graph.edges()}

    casts = propagator.insert_casts([value_id(graph, "s")], FP16)
    propagator.remove_cast_chain(casts)

    assert {(edge.producer, edge.consumer) for edge in graph.edges()} == edges_before
    assert _consumer_names(graph, "s") == ["exp1", "exp2"]
    assert _cast_names(graph) == []
    graph.check_consistency()


####################################################################################################
# Cast chain removal
####################################################################################################
def _chain_model(extra_nodes=(), extra_outputs=()):
    # X -> Sigmoid -> s -> Cast(fp16) -> a -> Cast(fp32) -> b -> Exp -> Y
    nodes = [
        helper.make_node("Sigmoid", ["X"], ["s"], name="sig"),
        make_cast("c1", "s", "a", FP16),
        make_cast("c2", "a", "b", FP32),
        helper.make_node("Exp", ["b"], ["Y"], name="exp"),
        *extra_nodes,
    ]
    return make_model(nodes, [make_tensor("X")], [make_tensor("Y"), *extra_outputs])


def test_remove_cast_chain():
    graph = build_graph(_chain_model())
    propagator = CastPropagator(graph)
    chain = [graph.find_node("c1"), graph.find_node("c2")]

    assert propagator.can_remove_cast_chain(chain)
    propagator.remove_cast_chain(chain)

    assert _cast_names(graph) == []
    assert graph.find_node("exp").inputs == [value_id(graph, "s")]
    graph.check_consistency()


def test_remove_cast_chain_from_graph_input():
    nodes = [
        make_cast("c1", "X", "a", FP16),
        helper.make_node("Exp", ["a"], ["Y"], name="exp"),
    ]
    graph = build_graph(make_model(nodes, [make_tensor("X")], [make_tensor("Y", FP16)]))
    CastPropagator(graph).remove_cast_chain([graph.find_node("c1")])

    assert graph.find_node("exp").inputs == [value_id(graph, "X")]
    assert graph.find_node("c1") is None
    graph.check_consistency()


def test_remove_empty_cast_chain():
    graph = build_graph(_chain_model())
    with pytest.raises(ValueError, match="empty cast chain"):
        CastPropagator(graph).remove_cast_chain([])


def test_remove_cast_chain_keeps_shared_head():
    relu = helper.make_node("Relu", ["a"], ["Y2"], name="relu")
    graph = build_graph(_chain_model([relu], [make_tensor("Y2", FP16)]))
    CastPropagator(graph).remove_cast_chain([graph.find_node("c1"), graph.find_node("c2")])

    assert _cast_names(graph) == ["c1"]
    assert graph.find_node("exp").inputs == [value_id(graph, "s")]
    assert _consumer_names(graph, "a") == ["relu"]
    graph.check_consistency()


def test_remove_cast_chain_ending_in_graph_output():
    nodes = [
        helper.make_node("Sigmoid", ["X"], ["s"], name="sig"),
        make_cast("c1", "s", "a", FP16),
        make_cast("c2", "a", "Y", FP32),
    ]
    model = make_model(nodes, [make_tensor("X")], [make_tensor("Y")])
    graph = build_graph(model)
    CastPropagator(graph).remove_cast_chain([graph.find_node("c1"), graph.find_node("c2")])

    assert _cast_names(graph) == []
    assert graph.get_producer(value_id(graph, "Y")).name == "sig"
    graph.check_consistency()

    model_out = graph.to_onnx()
    onnx.checker.check_model(model_out)
    onnx_utils.infer_shapes(model_out, strict_mode=True)


def test_cannot_remove_cast_between_graph_input_and_output():
    nodes = [make_cast("c1", "X", "Y", FP16)]
    graph = build_graph(make_model(nodes, [make_tensor("X")], [make_tensor("Y", FP16)]))
    propagator = CastPropagator(graph)
    chain = [graph.find_node("c1")]

    assert not propagator.can_remove_cast_chain(chain)
    with pytest.raises(ValueError, match="Cannot remove cast chain"):
        propagator.remove_cast_chain(chain)


def test_cannot_remove_unlinked_chain():
    graph = build_graph(_chain_model())
    chain = [graph.find_node("c2"), graph.find_node("c1")]
    assert not CastPropagator(graph).can_remove_cast_chain(chain)


####################################################################################################
# Back-to-back cancellation
####################################################################################################
def test_cancel_opposite_casts():
    graph = build_graph(_chain_model())
    assert CastPropagator(graph).remove_back_to_back_casts()

    assert _cast_names(graph) == []
    assert graph.find_node("exp").inputs == [value_id(graph, "s")]
    graph.check_consistency()


def test_cancel_duplicate_child_cast():
    nodes = [
        helper.make_node("Sigmoid", ["X"], ["s"], name="sig"),
        make_cast("c1", "s", "a", FP16),
        make_cast("c2", "a", "b", FP16),
        helper.make_node("Exp", ["b"], ["Y"], name="exp"),
    ]
    graph = build_graph(make_model(nodes, [make_tensor("X")], [make_tensor("Y", FP16)]))
    assert CastPropagator(graph).remove_back_to_back_casts()

    assert _cast_names(graph) == ["c1"]
    assert graph.find_node("exp").inputs == [value_id(graph, "a")]
    graph.check_consistency()


def test_keep_opposite_casts_of_non_float_source():
    nodes = [
        make_cast("c1", "X", "a", FP16),
        make_cast("c2", "a", "b", FP32),
        helper.make_node("Exp", ["b"], ["Y"], name="exp"),
    ]
    model = make_model(nodes, [make_tensor("X", TensorProto.INT32)], [make_tensor("Y")])
    graph = build_graph(model)
    assert not CastPropagator(graph).remove_back_to_back_casts()
    assert _cast_names(graph) == ["c1", "c2"]


def test_cast_without_target_is_fatal():
    nodes = [
        helper.make_node("Sigmoid", ["X"], ["s"], name="sig"),
        helper.make_node("Cast", ["s"], ["a"], name="c1"),
        make_cast("c2", "a", "Y", FP32),
    ]
    model = make_model(nodes, [make_tensor("X")], [make_tensor("Y")], check=False)
    graph = CastGraph.from_onnx(model)
    with pytest.raises(ValueError, match="does not have 'to' attribute"):
        CastPropagator(graph).remove_back_to_back_casts()


####################################################################################################
# Boundary search
####################################################################################################
def test_search_downstream():
    # X(fp16) -> Cast(fp32) -> u -> Transpose -> t -> Relu -> r -> Sigmoid -> Y1
    #                                             \-> Exp -> Y2
    nodes = [
        make_cast("up", "X", "u", FP32),
        helper.make_node("Transpose", ["u"], ["t"], name="tr", perm=[1, 0]),
        helper.make_node("Relu", ["t"], ["r"], name="relu"),
        helper.make_node("Sigmoid", ["r"], ["Y1"], name="sig"),
        helper.make_node("Exp", ["t"], ["Y2"], name="exp"),
    ]
    model = make_model(
        nodes, [make_tensor("X", FP16)], [make_tensor("Y1", shape=(3, 2)), make_tensor("Y2", shape=(3, 2))]
    )
    graph = build_graph(model)
    propagator = CastPropagator(graph)

    require_cast, interior = set(), set()
    propagator.search_downstream(value_id(graph, "u"), require_cast, interior)
    assert _names(graph, require_cast) == ["t"]
    assert _names(graph, interior) == ["u"]

    require_cast = set()
    propagator.search_downstream(value_id(graph, "r"), require_cast)
    assert _names(graph, require_cast) == ["r"]


def test_search_downstream_stops_at_graph_output():
    nodes = [
        make_cast("up", "X", "u", FP32),
        helper.make_node("Relu", ["u"], ["Y"], name="relu"),
    ]
    graph = build_graph(make_model(nodes, [make_tensor("X", FP16)], [make_tensor("Y")]))
    require_cast = set()
    CastPropagator(graph).search_downstream(value_id(graph, "u"), require_cast)
    assert _names(graph, require_cast) == ["Y"]


def test_search_downstream_stops_at_mixed_inputs():
    nodes = [
        make_cast("up", "X", "u", FP32),
        helper.make_node("Where", ["cond", "u", "Z"], ["w"], name="where"),
        helper.make_node("Relu", ["w"], ["Y"], name="relu"),
    ]
    model = make_model(
        nodes,
        [make_tensor("X", FP16), make_tensor("cond", TensorProto.BOOL), make_tensor("Z")],
        [make_tensor("Y")],
    )
    graph = build_graph(model)
    require_cast = set()
    CastPropagator(graph).search_downstream(value_id(graph, "u"), require_cast)
    assert _names(graph, require_cast) == ["u"]


def test_search_upstream():
    # X -> Sigmoid -> s -> MatMul(W) -> m -> Gather(idx) -> g -> Cast(fp16) -> Y
    weight = numpy_helper.from_array(np.ones((3, 3), dtype=np.float32), name="W")
    idx = numpy_helper.from_array(np.array([0, 1], dtype=np.int64), name="idx")
    nodes = [
        helper.make_node("Sigmoid", ["X"], ["s"], name="sig"),
        helper.make_node("MatMul", ["s", "W"], ["m"], name="matmul"),
        helper.make_node("Gather", ["m", "idx"], ["g"], name="gather", axis=0),
        make_cast("down", "g", "Y", FP16),
    ]
    model = make_model(nodes, [make_tensor("X")], [make_tensor("Y", FP16)], [weight, idx])
    graph = build_graph(model)

    require_cast, interior = set(), set()
    CastPropagator(graph).search_upstream(value_id(graph, "g"), require_cast, interior)
    assert _names(graph, require_cast) == ["W", "s"]
    assert _names(graph, interior) == ["g", "m"]


def test_search_upstream_records_boundary_start():
    graph = build_graph(_chain_model())
    require_cast = set()
    CastPropagator(graph).search_upstream(value_id(graph, "s"), require_cast)
    assert _names(graph, require_cast) == ["s"]
