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

"""Mutable graph representation used by the cast propagation pass.

The graph is stored as an arena of nodes and values addressed by integer ids. Nodes never refer to
each other directly: they are connected through the values they consume and produce, and the
producer and consumer relations are kept in index maps keyed by value id. Every mutation goes
through the methods of :class:`CastGraph`, which update both sides of the index together so that
:meth:`CastGraph.check_consistency` holds after each call.
"""

import copy
from collections import namedtuple
from dataclasses import dataclass, field

import onnx
from onnx import TensorProto, helper

import castopt.onnx.utils as onnx_utils

__all__ = ["CastGraph", "Edge", "Node", "Value"]

Edge = namedtuple("Edge", ["producer", "output_slot", "consumer", "input_slot", "value"])


@dataclass(eq=False)
class Value:
    """A tensor flowing between nodes.

    ``exists`` is False for the empty-name placeholders ONNX uses for omitted optional inputs and
    outputs. Such values carry no data and are never cast.
    """

    id: int
    name: str
    elem_type: int = TensorProto.UNDEFINED
    shape: list | None = None
    exists: bool = True


@dataclass(eq=False)
class Node:
    """An operator instance. ``inputs`` and ``outputs`` hold value ids in slot order."""

    id: int
    name: str
    op_type: str
    inputs: list[int] = field(default_factory=list)
    outputs: list[int] = field(default_factory=list)
    attrs: dict[str, onnx.AttributeProto] = field(default_factory=dict)
    domain: str = ""


def _subgraphs(attr: onnx.AttributeProto) -> list[onnx.GraphProto]:
    if attr.type == onnx.AttributeProto.GRAPH:
        return [attr.g]
    if attr.type == onnx.AttributeProto.GRAPHS:
        return list(attr.graphs)
    return []


def _collect_subgraph_names(graph: onnx.GraphProto, names: set[str]) -> None:
    stack = [graph]
    while stack:
        current = stack.pop()
        for vi in current.input:
            names.add(vi.name)
        for node in current.node:
            names.update(name for name in node.input if name)
            names.update(name for name in node.output if name)
            for attr in node.attribute:
                stack.extend(_subgraphs(attr))


class CastGraph:
    """Arena graph with a producer/consumer index.

    Public Methods:
        from_onnx: Build the arena from an ONNX model.
        to_onnx: Write the arena back into a copy of the source model.
        add_node / remove_node / disconnect_node: Node level mutations.
        set_input / set_output: Rewire a single slot, updating the index on both sides.
        create_value: Add a value with a fresh name derived from a seed.
        check_consistency: Verify that the index and the node slots agree.
    """

    def __init__(self, model: onnx.ModelProto | None = None) -> None:
        """Initialize an empty graph.

        Args:
            model: Source model. Its metadata, opsets, initializers and functions are carried over by
                :meth:`to_onnx`.
        """
        self._model = model
        self._nodes: dict[int, Node] = {}
        self._values: dict[int, Value] = {}
        self._value_names: dict[str, int] = {}
        self._node_names: set[str] = set()
        self._reserved_names: set[str] = set()
        self._producers: dict[int, tuple[int, int]] = {}
        self._consumers: dict[int, list[tuple[int, int]]] = {}
        self._inputs: list[int] = []
        self._initializers: set[int] = set()
        self._outputs: list[int] = []
        self._captured: set[int] = set()
        self._next_node_id = 0
        self._next_value_id = 0

    # ---------------------------------------------------------------------------------------------
    # Queries

    @property
    def nodes(self) -> list[Node]:
        """Snapshot of the nodes in insertion order."""
        return list(self._nodes.values())

    @property
    def values(self) -> list[Value]:
        return list(self._values.values())

    @property
    def graph_inputs(self) -> list[Value]:
        return [self._values[vid] for vid in self._inputs]

    @property
    def graph_outputs(self) -> list[Value]:
        return [self._values[vid] for vid in self._outputs]

    @property
    def initializers(self) -> list[Value]:
        return [self._values[vid] for vid in sorted(self._initializers)]

    def node(self, node_id: int) -> Node:
        return self._nodes[node_id]

    def value(self, value_id: int) -> Value:
        return self._values[value_id]

    def has_node(self, node_id: int) -> bool:
        return node_id in self._nodes

    def find_node(self, name: str) -> Node | None:
        """Returns the node with the given name, if any."""
        return next((node for node in self._nodes.values() if node.name == name), None)

    def find_value(self, name: str) -> Value | None:
        """Returns the existing value with the given name, if any."""
        value_id = self._value_names.get(name)
        return self._values[value_id] if value_id is not None else None

    def get_producer(self, value_id: int) -> Node | None:
        """Returns the node producing the value, or None for graph inputs and initializers."""
        entry = self._producers.get(value_id)
        return self._nodes[entry[0]] if entry else None

    def get_producer_slot(self, value_id: int) -> tuple[Node, int] | None:
        """Returns the producing node and its output slot."""
        entry = self._producers.get(value_id)
        return (self._nodes[entry[0]], entry[1]) if entry else None

    def get_uses(self, value_id: int) -> list[tuple[Node, int]]:
        """Returns every (consumer node, input slot) pair reading the value."""
        return [(self._nodes[nid], slot) for nid, slot in self._consumers.get(value_id, [])]

    def get_consumers(self, value_id: int) -> list[Node]:
        """Returns the distinct consumer nodes of the value, in first-use order."""
        seen: set[int] = set()
        consumers = []
        for nid, _ in self._consumers.get(value_id, []):
            if nid not in seen:
                seen.add(nid)
                consumers.append(self._nodes[nid])
        return consumers

    def is_initializer(self, value_id: int) -> bool:
        return value_id in self._initializers

    def is_graph_input(self, value_id: int) -> bool:
        """Checks if the value is a graph input, initializers included."""
        return value_id in self._initializers or value_id in self._inputs

    def is_graph_output(self, value_id: int) -> bool:
        return value_id in self._outputs

    def is_interface_output(self, value_id: int) -> bool:
        """Checks if the value name is observed outside of the node slots.

        That is the case for graph outputs and for values captured by a subgraph of a control flow
        node. Such values must keep their name and cannot be replaced by another value.
        """
        return value_id in self._outputs or value_id in self._captured

    def edges(self) -> list[Edge]:
        """Lists the (producer, output slot) -> (consumer, input slot) edges of the graph."""
        edges = []
        for value_id, uses in self._consumers.items():
            entry = self._producers.get(value_id)
            if entry is None:
                continue
            for consumer_id, input_slot in uses:
                edges.append(Edge(entry[0], entry[1], consumer_id, input_slot, value_id))
        return edges

    # ---------------------------------------------------------------------------------------------
    # Names

    def _is_name_taken(self, name: str) -> bool:
        return name in self._value_names or name in self._reserved_names

    def generate_value_name(self, seed: str) -> str:
        """Returns ``seed`` or ``seed_<i>`` for the first i that is not used by any value."""
        if not self._is_name_taken(seed):
            return seed
        idx = 1
        while self._is_name_taken(f"{seed}_{idx}"):
            idx += 1
        return f"{seed}_{idx}"

    def generate_node_name(self, seed: str) -> str:
        """Returns ``seed`` or ``seed_<i>`` for the first i that is not used by any node."""
        if seed not in self._node_names:
            return seed
        idx = 1
        while f"{seed}_{idx}" in self._node_names:
            idx += 1
        return f"{seed}_{idx}"

    # ---------------------------------------------------------------------------------------------
    # Mutations

    def add_value(
        self,
        name: str,
        elem_type: int = TensorProto.UNDEFINED,
        shape: list | None = None,
        exists: bool = True,
    ) -> Value:
        """Adds a value with the given name.

        Raises:
            ValueError: If an existing value already uses the name.
        """
        if exists and name in self._value_names:
            raise ValueError(f"Value {name} already exists in the graph")
        value = Value(self._next_value_id, name if exists else "", elem_type, shape, exists)
        self._next_value_id += 1
        self._values[value.id] = value
        if exists:
            self._value_names[name] = value.id
        return value

    def create_value(self, seed: str, elem_type: int, shape: list | None = None) -> Value:
        """Adds a value with a fresh name derived from ``seed``."""
        return self.add_value(self.generate_value_name(seed), elem_type, shape)

    def add_node(
        self,
        op_type: str,
        inputs: list[int],
        outputs: list[int],
        attrs: dict[str, onnx.AttributeProto] | None = None,
        name: str | None = None,
        domain: str = "",
    ) -> Node:
        """Adds a node and registers it as consumer of its inputs and producer of its outputs.

        Args:
            op_type: Operator type of the node.
            inputs: Input value ids in slot order.
            outputs: Output value ids in slot order.
            attrs: Attribute protos keyed by attribute name.
            name: Node name. A fresh name is generated if it is missing or already used.
            domain: Operator domain.

        Returns:
            The new node.

        Raises:
            ValueError: If one of the outputs is already produced by another node.
        """
        for value_id in outputs:
            if value_id in self._producers:
                producer = self._nodes[self._producers[value_id][0]]
                raise ValueError(
                    f"Value {self._values[value_id].name} is already produced by {producer.name}"
                )
        node_name = self.generate_node_name(name or op_type)
        node = Node(
            self._next_node_id,
            node_name,
            op_type,
            list(inputs),
            list(outputs),
            dict(attrs or {}),
            domain,
        )
        self._next_node_id += 1
        self._nodes[node.id] = node
        self._node_names.add(node_name)
        for slot, value_id in enumerate(node.inputs):
            self._consumers.setdefault(value_id, []).append((node.id, slot))
        for slot, value_id in enumerate(node.outputs):
            self._producers[value_id] = (node.id, slot)
        return node

    def disconnect_node(self, node_id: int) -> None:
        """Drops every index entry touching the node and clears its slots.

        The node stays in the arena until :meth:`remove_node` is called on it.
        """
        node = self._nodes[node_id]
        for slot, value_id in enumerate(node.inputs):
            self._consumers[value_id].remove((node_id, slot))
            if not self._consumers[value_id]:
                del self._consumers[value_id]
        for slot, value_id in enumerate(node.outputs):
            if self._producers.get(value_id) == (node_id, slot):
                del self._producers[value_id]
        node.inputs = []
        node.outputs = []

    def remove_node(self, node_id: int) -> None:
        """Removes the node and every index entry touching it."""
        self.disconnect_node(node_id)
        node = self._nodes.pop(node_id)
        self._node_names.discard(node.name)

    def set_input(self, node_id: int, slot: int, value_id: int) -> None:
        """Makes input ``slot`` of the node read ``value_id`` instead of its current value."""
        node = self._nodes[node_id]
        old_id = node.inputs[slot]
        if old_id == value_id:
            return
        self._consumers[old_id].remove((node_id, slot))
        if not self._consumers[old_id]:
            del self._consumers[old_id]
        node.inputs[slot] = value_id
        self._consumers.setdefault(value_id, []).append((node_id, slot))

    def set_output(self, node_id: int, slot: int, value_id: int) -> None:
        """Makes output ``slot`` of the node produce ``value_id`` instead of its current value.

        Raises:
            ValueError: If ``value_id`` is already produced by another node.
        """
        node = self._nodes[node_id]
        old_id = node.outputs[slot]
        if old_id == value_id:
            return
        if value_id in self._producers:
            raise ValueError(f"Value {self._values[value_id].name} already has a producer")
        del self._producers[old_id]
        node.outputs[slot] = value_id
        self._producers[value_id] = (node_id, slot)

    def check_consistency(self) -> None:
        """Asserts that node slots and the producer/consumer index describe the same edges."""
        expected_consumers: dict[int, list[tuple[int, int]]] = {}
        for node in self._nodes.values():
            for slot, value_id in enumerate(node.inputs):
                assert value_id in self._values, f"{node.name} reads unknown value id {value_id}"
                expected_consumers.setdefault(value_id, []).append((node.id, slot))
            for slot, value_id in enumerate(node.outputs):
                assert value_id in self._values, f"{node.name} writes unknown value id {value_id}"
                assert self._producers.get(value_id) == (node.id, slot), (
                    f"Producer of {self._values[value_id].name} is not {node.name}:{slot}"
                )
        for value_id, (node_id, slot) in self._producers.items():
            assert node_id in self._nodes, f"Dangling producer for value id {value_id}"
            assert self._nodes[node_id].outputs[slot] == value_id, (
                f"Stale producer entry for {self._values[value_id].name}"
            )
        for value_id, uses in self._consumers.items():
            assert sorted(uses) == sorted(expected_consumers.get(value_id, [])), (
                f"Consumer index of {self._values[value_id].name} is out of sync"
            )
        for value_id in expected_consumers:
            assert value_id in self._consumers, (
                f"Missing consumer entries for {self._values[value_id].name}"
            )

    # ---------------------------------------------------------------------------------------------
    # ONNX conversion

    @classmethod
    def from_onnx(cls, model: onnx.ModelProto) -> "CastGraph":
        """Builds the arena from the main graph of an ONNX model.

        Element types and shapes come from the graph inputs, outputs, value_info and initializers.
        Cast outputs with no recorded type take the type of their ``to`` attribute.
        """
        graph = cls(model)
        onnx_graph = model.graph

        types: dict[str, tuple[int, list | None]] = {}
        for vi in [*onnx_graph.input, *onnx_graph.output, *onnx_graph.value_info]:
            if not vi.type.HasField("tensor_type"):
                continue
            tensor_type = vi.type.tensor_type
            shape = None
            if tensor_type.HasField("shape"):
                shape = [
                    d.dim_value if d.HasField("dim_value") else (d.dim_param or None)
                    for d in tensor_type.shape.dim
                ]
            types[vi.name] = (tensor_type.elem_type, shape)
        for init in onnx_graph.initializer:
            types[init.name] = (init.data_type, list(init.dims))

        def _value_id(name: str) -> int:
            if not name:
                return graph.add_value("", exists=False).id
            if name not in graph._value_names:
                elem_type, shape = types.get(name, (TensorProto.UNDEFINED, None))
                graph.add_value(name, elem_type, shape)
            return graph._value_names[name]

        for vi in onnx_graph.input:
            graph._inputs.append(_value_id(vi.name))
        for init in onnx_graph.initializer:
            graph._initializers.add(_value_id(init.name))

        subgraph_names: set[str] = set()
        for proto in onnx_graph.node:
            node = graph.add_node(
                proto.op_type,
                [_value_id(name) for name in proto.input],
                [_value_id(name) for name in proto.output],
                {attr.name: copy.deepcopy(attr) for attr in proto.attribute},
                name=proto.name or None,
                domain=proto.domain,
            )
            if node.op_type == "Cast" and "to" in node.attrs:
                to_type = onnx_utils.get_attribute(proto, "to")
                for value_id in node.outputs:
                    if graph._values[value_id].elem_type == TensorProto.UNDEFINED:
                        graph._values[value_id].elem_type = to_type
            for attr in proto.attribute:
                for subgraph in _subgraphs(attr):
                    _collect_subgraph_names(subgraph, subgraph_names)

        for vi in onnx_graph.output:
            graph._outputs.append(_value_id(vi.name))

        graph._reserved_names = subgraph_names
        graph._captured = {
            graph._value_names[name] for name in subgraph_names if name in graph._value_names
        }
        return graph

    def to_onnx(self) -> onnx.ModelProto:
        """Writes the arena into a copy of the source model.

        Cast nodes with several outputs (the result of sibling fusion) are emitted with their first
        output only: readers of the other outputs are pointed at the first one, and outputs whose
        name must survive are produced by an Identity on the first output.
        """
        assert self._model is not None, "The graph was not created from an ONNX model"
        model = copy.deepcopy(self._model)
        onnx_graph = model.graph
        del onnx_graph.node[:]
        del onnx_graph.value_info[:]

        renamed: dict[int, int] = {}
        identities: list[tuple[int, int]] = []
        for node in self._nodes.values():
            if node.op_type != "Cast" or len(node.outputs) < 2:
                continue
            first = node.outputs[0]
            for extra in node.outputs[1:]:
                if self.is_interface_output(extra):
                    identities.append((first, extra))
                else:
                    renamed[extra] = first

        def _name(value_id: int) -> str:
            return self._values[renamed.get(value_id, value_id)].name

        for node in self._nodes.values():
            outputs = node.outputs
            if node.op_type == "Cast" and len(outputs) > 1:
                outputs = outputs[:1]
            proto = helper.make_node(
                node.op_type,
                [_name(vid) for vid in node.inputs],
                [self._values[vid].name for vid in outputs],
                name=node.name,
                domain=node.domain or None,
            )
            proto.attribute.extend(node.attrs.values())
            onnx_graph.node.append(proto)

        used_names = set(self._node_names)
        for first, extra in identities:
            seed = f"{self._values[extra].name}_identity"
            node_name, idx = seed, 1
            while node_name in used_names:
                node_name, idx = f"{seed}_{idx}", idx + 1
            used_names.add(node_name)
            onnx_graph.node.append(
                helper.make_node(
                    "Identity",
                    [self._values[first].name],
                    [self._values[extra].name],
                    name=node_name,
                )
            )
        return model
