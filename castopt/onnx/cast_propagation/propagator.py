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

"""Cast propagation pass.

This module moves, cancels and fuses Cast nodes of a mixed precision graph so that the graph
computes the same results with fewer casts. Wide precision is FP32 and narrow precision is FP16 or
BF16. Which ops may run in narrow precision is decided by an :class:`OpClassificationPolicy`.

A single call of :meth:`CastPropagator.apply` runs, in order:

1. forward propagation of FP32 casts from every node,
2. a back-to-back cast cancellation sweep,
3. backward propagation of narrow casts from every graph output, if nothing changed so far,
4. fusion of sibling casts,
5. removal of the nodes queued by the previous steps.

One call is not guaranteed to reach a fixed point. Callers re-apply the pass until it reports no
change.
"""

import copy
from collections import deque
from collections.abc import Iterable

from onnx import TensorProto, helper

from castopt.onnx.logging_config import logger

from .config import LOW_PRECISION_TYPES, PRECISION_MAP, get_precision
from .graph import CastGraph, Node
from .policy import OpClassificationPolicy

__all__ = ["CastPropagator", "get_cast_to_type"]

FLOAT_TYPES = [TensorProto.FLOAT, TensorProto.FLOAT16, TensorProto.BFLOAT16, TensorProto.DOUBLE]


def get_cast_to_type(node: Node) -> int:
    """Returns the target type of a Cast node.

    Raises:
        ValueError: If the node has no 'to' attribute.
    """
    if "to" not in node.attrs:
        raise ValueError(f"Cast node {node.name} does not have 'to' attribute")
    return node.attrs["to"].i


class CastPropagator:
    """Cast propagation pass over a :class:`CastGraph`.

    Public Methods:
        apply: Run one invocation of the pass and report whether the graph changed.
        insert_casts: Splice a cast into each of the given values.
        remove_cast_chain: Splice a chain of casts out of the graph.
        remove_back_to_back_casts: Cancel adjacent casts.
        search_downstream / search_upstream: Find the values where a moved cast must be placed.
        propagate_forwards / propagate_backwards: Move casts across pass-through ops.
        fuse_sibling_casts: Merge casts that read the same value with the same target.
    """

    def __init__(
        self,
        graph: CastGraph,
        policy: OpClassificationPolicy | None = None,
        low_precision_type: str = "fp16",
    ) -> None:
        """Initialize the pass.

        Args:
            graph: Graph to rewrite in place.
            policy: Op classification. Defaults to the built-in op lists.
            low_precision_type: Narrow precision, 'fp16' or 'bf16'.
        """
        if low_precision_type not in LOW_PRECISION_TYPES:
            raise ValueError(f"Unsupported precision type: {low_precision_type}")
        self.graph = graph
        self.policy = policy or OpClassificationPolicy()
        self.high_precision_type = PRECISION_MAP["fp32"]
        self.low_precision_type = PRECISION_MAP[low_precision_type]
        self.wide = self.high_precision_type.onnx_type
        self.narrow = self.low_precision_type.onnx_type
        self._removed_nodes: deque[int] = deque()

    def apply(self) -> bool:
        """Runs one invocation of the pass.

        Returns:
            True if the graph was modified.
        """
        graph = self.graph
        modified = False

        for node in graph.nodes:
            if graph.has_node(node.id):
                modified |= self.propagate_forwards(node)

        modified |= self.remove_back_to_back_casts()

        if not modified:
            for value in graph.graph_outputs:
                producer = graph.get_producer(value.id)
                if producer is not None:
                    modified |= self.propagate_backwards(producer)

        for node in graph.nodes:
            if graph.has_node(node.id):
                modified |= self.fuse_sibling_casts(node)

        self._flush_removed_nodes()
        return modified

    # ---------------------------------------------------------------------------------------------
    # Type helpers

    def _is_tracked(self, elem_type: int) -> bool:
        return elem_type in (self.wide, self.narrow)

    def _opposite(self, elem_type: int) -> int:
        return self.narrow if elem_type == self.wide else self.wide

    def _may_be_float(self, value_id: int) -> bool:
        value = self.graph.value(value_id)
        return value.exists and value.elem_type in [TensorProto.UNDEFINED, *FLOAT_TYPES]

    def _all_of_type(self, value_ids: Iterable[int], elem_type: int) -> bool:
        return all(self.graph.value(vid).elem_type == elem_type for vid in value_ids)

    # ---------------------------------------------------------------------------------------------
    # Splice primitives

    def insert_casts(self, value_ids: Iterable[int], target_type: int) -> list[Node]:
        """Inserts a cast to ``target_type`` at each of the given values.

        A value whose type differs from the target gets a cast on its consumer side: all readers of
        the value are moved to the cast output. A value already at the target type gets a cast on
        its producer side: the producer writes to a new value of the opposite precision and the cast
        produces the original value. Values with no producer that are already at the target need no
        cast. Placeholders and values that are not of the wide or narrow type are skipped.

        Args:
            value_ids: Ids of the values to cast.
            target_type: ONNX type the casts convert to.

        Returns:
            The Cast nodes that were added.

        Raises:
            ValueError: If a value is both a graph input and a graph output.
        """
        graph = self.graph
        cast_to = get_precision(target_type)
        if cast_to is None or not self._is_tracked(target_type):
            raise ValueError(f"Unsupported precision type: {target_type}")

        new_casts = []
        for value_id in sorted(set(value_ids)):
            value = graph.value(value_id)
            if not value.exists:
                continue
            if graph.is_graph_input(value_id) and graph.is_graph_output(value_id):
                raise ValueError(
                    f"Cannot insert a cast on {value.name}: it is both a graph input and output"
                )
            if not self._is_tracked(value.elem_type):
                logger.debug(f"Skipping cast insertion on {value.name} of type {value.elem_type}")
                continue

            attrs = {"to": helper.make_attribute("to", target_type)}
            cast_name = f"{value.name}_cast_to_{cast_to.str_short}"
            if value.elem_type != target_type:
                new_value = graph.create_value(cast_name, target_type, value.shape)
                uses = graph.get_uses(value_id)
                cast = graph.add_node("Cast", [value_id], [new_value.id], attrs, name=cast_name)
                for consumer, slot in uses:
                    graph.set_input(consumer.id, slot, new_value.id)
            else:
                producer_slot = graph.get_producer_slot(value_id)
                if producer_slot is None:
                    logger.debug(f"{value.name} is already {cast_to.str_full}, no cast needed")
                    continue
                producer, slot = producer_slot
                opposite = self._opposite(target_type)
                new_value = graph.create_value(
                    f"{value.name}_{get_precision(opposite).str_short}", opposite, value.shape
                )
                graph.set_output(producer.id, slot, new_value.id)
                cast = graph.add_node("Cast", [new_value.id], [value_id], attrs, name=cast_name)

            logger.debug(f"Inject cast to {cast_to.str_full} on {value.name}")
            new_casts.append(cast)
        return new_casts

    def can_remove_cast_chain(self, nodes: list[Node]) -> bool:
        """Checks if the chain can be spliced out without renaming an interface value.

        The chain must be a head-to-tail sequence of single-input single-output Cast nodes. If the
        tail output is a graph output (or captured by a subgraph), the producer of the head input
        takes over the tail output, so the head input must be produced by a node, must not be graph
        I/O itself, and must feed nothing but the chain.
        """
        graph = self.graph
        if not nodes:
            return False
        for idx, node in enumerate(nodes):
            if not graph.has_node(node.id) or node.op_type != "Cast":
                return False
            if len(node.inputs) != 1 or len(node.outputs) != 1:
                return False
            if idx and node.inputs[0] != nodes[idx - 1].outputs[0]:
                return False

        head_input = nodes[0].inputs[0]
        if not graph.is_interface_output(nodes[-1].outputs[0]):
            return True
        if graph.get_producer(head_input) is None:
            return False
        if graph.is_graph_input(head_input) or graph.is_interface_output(head_input):
            return False
        if [n.id for n in graph.get_consumers(head_input)] != [nodes[0].id]:
            return False
        for node, next_node in zip(nodes[:-1], nodes[1:]):
            output = node.outputs[0]
            if graph.is_interface_output(output):
                return False
            if [n.id for n in graph.get_consumers(output)] != [next_node.id]:
                return False
        return True

    def remove_cast_chain(self, nodes: list[Node]) -> None:
        """Splices a head-to-tail chain of Cast nodes out of the graph.

        Readers of the tail output read the head input instead, keeping their input slots. A chain
        node whose output is still read outside of the chain stays in the graph.

        Raises:
            ValueError: If the chain is empty or cannot be removed, see :meth:`can_remove_cast_chain`.
        """
        if not nodes:
            raise ValueError("Cannot remove an empty cast chain")
        if not self.can_remove_cast_chain(nodes):
            raise ValueError(f"Cannot remove cast chain {[node.name for node in nodes]}")

        graph = self.graph
        logger.debug(f"Removing cast chain {[node.name for node in nodes]}")
        head_input = nodes[0].inputs[0]
        tail_output = nodes[-1].outputs[0]

        if graph.is_interface_output(tail_output):
            producer, slot = graph.get_producer_slot(head_input)
            for node in nodes:
                graph.remove_node(node.id)
            graph.set_output(producer.id, slot, tail_output)
            return

        for consumer, slot in graph.get_uses(tail_output):
            graph.set_input(consumer.id, slot, head_input)
        for node in reversed(nodes):
            output = node.outputs[0]
            if graph.get_uses(output) or graph.is_interface_output(output):
                break
            graph.remove_node(node.id)

    def remove_back_to_back_casts(self) -> bool:
        """Removes casts that directly follow another cast.

        A pair with opposite targets is removed when the parent input already has the child's
        target type. A child with the same target as its parent is removed on its own. This is a
        single sweep, pairs uncovered by a removal may only be found by the next invocation.

        Returns:
            True if any cast was removed.
        """
        graph = self.graph
        modified = False
        for node in graph.nodes:
            if not graph.has_node(node.id) or node.op_type != "Cast":
                continue
            parent_to = get_cast_to_type(node)
            for output in list(node.outputs):
                for child in graph.get_consumers(output):
                    if not graph.has_node(node.id):
                        break
                    if child.op_type != "Cast":
                        continue
                    child_to = get_cast_to_type(child)
                    if not (self._is_tracked(parent_to) and self._is_tracked(child_to)):
                        continue
                    if parent_to != child_to:
                        if graph.value(node.inputs[0]).elem_type != child_to:
                            continue
                        chain = [node, child]
                    else:
                        chain = [child]
                    if not self.can_remove_cast_chain(chain):
                        logger.debug(f"Keeping casts {[n.name for n in chain]}: interface output")
                        continue
                    self.remove_cast_chain(chain)
                    modified = True
        return modified

    # ---------------------------------------------------------------------------------------------
    # Boundary search

    def _passes_downstream(self, node: Node, value_id: int) -> bool:
        # Every other float input would be left in the old precision.
        if not self.policy.is_pass_through(node.op_type):
            return False
        return all(vid == value_id or not self._may_be_float(vid) for vid in node.inputs)

    def search_downstream(
        self, value_id: int, require_cast: set[int], interior: set[int] | None = None
    ) -> None:
        """Collects the values below ``value_id`` where a wide cast is required.

        The walk follows pass-through consumers. A value read by any other op, or that is a graph
        output, is a boundary: it is added to ``require_cast`` and the walk stops there.

        Args:
            value_id: Start value.
            require_cast: Set that receives the boundary values.
            interior: Optional set that receives the visited values that are not boundaries.
        """
        graph = self.graph
        stack = [value_id]
        visited: set[int] = set()
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            consumers = graph.get_consumers(current)
            if graph.is_interface_output(current) or not all(
                self._passes_downstream(consumer, current) for consumer in consumers
            ):
                require_cast.add(current)
                continue
            if interior is not None:
                interior.add(current)
            for consumer in consumers:
                stack.extend(vid for vid in consumer.outputs if self._may_be_float(vid))

    def search_upstream(
        self, value_id: int, require_cast: set[int], interior: set[int] | None = None
    ) -> None:
        """Collects the values above ``value_id`` where a narrow cast is required.

        The walk follows producers that are pass-through or precision-safe ops into their float
        inputs. Graph inputs, initializers and outputs of boundary ops are added to ``require_cast``.

        Args:
            value_id: Start value.
            require_cast: Set that receives the boundary values.
            interior: Optional set that receives the visited values that are not boundaries.
        """
        graph = self.graph
        stack = [value_id]
        visited: set[int] = set()
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            producer = graph.get_producer(current)
            if producer is None or self.policy.is_boundary(producer.op_type):
                require_cast.add(current)
                continue
            if interior is not None:
                interior.add(current)
            stack.extend(vid for vid in producer.inputs if self._may_be_float(vid))

    # ---------------------------------------------------------------------------------------------
    # Propagation

    def propagate_forwards(self, node: Node) -> bool:
        """Moves FP32 casts down from ``node`` and the nodes reachable through its consumers.

        Returns:
            True if the graph was modified.
        """
        graph = self.graph
        modified = False
        stack = [node.id]
        visited: set[int] = set()
        while stack:
            node_id = stack.pop()
            if node_id in visited or not graph.has_node(node_id):
                continue
            visited.add(node_id)
            current = graph.node(node_id)
            if current.op_type == "Cast":
                if get_cast_to_type(current) == self.wide:
                    modified |= self._sink_wide_cast(current)
            elif self.policy.is_precision_safe(current.op_type):
                modified |= self._collapse_input_casts(current)
            else:
                for output in current.outputs:
                    stack.extend(consumer.id for consumer in graph.get_consumers(output))
        return modified

    def _sink_wide_cast(self, cast: Node) -> bool:
        graph = self.graph
        if len(cast.inputs) != 1 or len(cast.outputs) != 1:
            return False
        if graph.value(cast.inputs[0]).elem_type != self.narrow:
            return False

        cast_output = cast.outputs[0]
        require_cast: set[int] = set()
        interior: set[int] = set()
        self.search_downstream(cast_output, require_cast, interior)
        if not require_cast or cast_output in require_cast:
            return False
        if not self._all_of_type(require_cast, self.wide):
            return False
        if not self.can_remove_cast_chain([cast]):
            return False

        logger.debug(
            f"Moving cast {cast.name} down to {[graph.value(v).name for v in sorted(require_cast)]}"
        )
        self.remove_cast_chain([cast])
        for value_id in interior:
            graph.value(value_id).elem_type = self.narrow
        self.insert_casts(require_cast, self.wide)
        return True

    def _collapse_input_casts(self, node: Node) -> bool:
        graph = self.graph
        inputs = [vid for vid in node.inputs if graph.value(vid).exists]
        if not inputs or not node.outputs:
            return False

        casts: list[Node] = []
        for value_id in inputs:
            producer = graph.get_producer(value_id)
            if producer is None or producer.op_type != "Cast":
                return False
            if get_cast_to_type(producer) != self.wide:
                return False
            if graph.value(producer.inputs[0]).elem_type != self.narrow:
                return False
            if graph.is_interface_output(value_id):
                return False
            if any(consumer.id != node.id for consumer in graph.get_consumers(value_id)):
                return False
            if all(cast.id != producer.id for cast in casts):
                casts.append(producer)

        output = node.outputs[0]
        if graph.value(output).elem_type != self.wide:
            return False
        for extra in node.outputs[1:]:
            if graph.get_uses(extra) or graph.is_interface_output(extra):
                return False

        logger.debug(f"Collapsing {len(casts)} input casts of {node.name} into its output")
        for cast in casts:
            self.remove_cast_chain([cast])
        self.insert_casts([output], self.wide)
        return True

    def propagate_backwards(self, node: Node) -> bool:
        """Moves narrow casts up from ``node`` and the nodes reachable through its producers.

        Returns:
            True if the graph was modified.
        """
        graph = self.graph
        modified = False
        stack = [node.id]
        visited: set[int] = set()
        while stack:
            node_id = stack.pop()
            if node_id in visited or not graph.has_node(node_id):
                continue
            visited.add(node_id)
            current = graph.node(node_id)
            if current.op_type == "Cast" and get_cast_to_type(current) == self.narrow:
                modified |= self._hoist_narrow_cast(current)
            else:
                for value_id in current.inputs:
                    producer = graph.get_producer(value_id)
                    if producer is not None:
                        stack.append(producer.id)
        return modified

    def _hoist_narrow_cast(self, cast: Node) -> bool:
        graph = self.graph
        if len(cast.inputs) != 1 or len(cast.outputs) != 1:
            return False
        cast_input = cast.inputs[0]
        if graph.value(cast_input).elem_type != self.wide:
            return False

        require_cast: set[int] = set()
        interior: set[int] = set()
        self.search_upstream(cast_input, require_cast, interior)
        if not require_cast or cast_input in require_cast:
            return False
        if not self._all_of_type(require_cast, self.wide):
            return False
        if not self.can_remove_cast_chain([cast]):
            return False

        # Every output of the region switches to narrow, so none may be read outside of it.
        region = {graph.get_producer(value_id).id for value_id in interior}
        changed = {
            vid
            for node_id in region
            for vid in graph.node(node_id).outputs
            if self._may_be_float(vid)
        }
        if not self._all_of_type(changed, self.wide):
            return False
        for value_id in changed:
            if graph.is_interface_output(value_id):
                return False
            if any(c.id not in region and c.id != cast.id for c in graph.get_consumers(value_id)):
                return False
        for value_id in require_cast:
            if graph.is_graph_input(value_id) and graph.is_interface_output(value_id):
                return False
            if any(c.id not in region for c in graph.get_consumers(value_id)):
                return False

        logger.debug(
            f"Moving cast {cast.name} up to {[graph.value(v).name for v in sorted(require_cast)]}"
        )
        self.remove_cast_chain([cast])
        for value_id in changed:
            graph.value(value_id).elem_type = self.narrow
        self.insert_casts(require_cast, self.narrow)
        return True

    # ---------------------------------------------------------------------------------------------
    # Fusion

    def fuse_sibling_casts(self, node: Node) -> bool:
        """Merges the casts reading the same output of ``node`` with the same target.

        Each group of two or more siblings is replaced by a single Cast node producing all of their
        outputs. The original casts are detached at once and deleted at the end of :meth:`apply`.

        Returns:
            True if any casts were fused.
        """
        graph = self.graph
        modified = False
        for output in list(node.outputs):
            groups: dict[int, list[Node]] = {}
            for consumer in graph.get_consumers(output):
                if consumer.op_type != "Cast":
                    continue
                cast_to = get_cast_to_type(consumer)
                if self._is_tracked(cast_to):
                    groups.setdefault(cast_to, []).append(consumer)
            for siblings in groups.values():
                if len(siblings) > 1:
                    self._fuse_casts(output, siblings)
                    modified = True
        return modified

    def _fuse_casts(self, value_id: int, siblings: list[Node]) -> Node:
        graph = self.graph
        first = siblings[0]
        outputs = [vid for sibling in siblings for vid in sibling.outputs]
        attrs = {name: copy.deepcopy(attr) for name, attr in first.attrs.items()}
        for sibling in siblings:
            graph.disconnect_node(sibling.id)
            self._removed_nodes.append(sibling.id)
        fused = graph.add_node(
            first.op_type,
            [value_id],
            outputs,
            attrs,
            name=f"{first.name}_replace",
            domain=first.domain,
        )
        logger.debug(
            f"Fusing {len(siblings)} sibling casts {[s.name for s in siblings]} into {fused.name}"
        )
        return fused

    def _flush_removed_nodes(self) -> None:
        while self._removed_nodes:
            node_id = self._removed_nodes.popleft()
            if self.graph.has_node(node_id):
                self.graph.remove_node(node_id)
