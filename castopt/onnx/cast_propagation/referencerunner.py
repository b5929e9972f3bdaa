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

"""Reference runner module for ONNX model execution.

This module runs ONNX models with ONNXRuntime on user-provided or random inputs. It is used to
check that a model rewritten by the cast propagation pass still produces the outputs of the
original model.
"""

import io
import sys
from collections import OrderedDict

import numpy as np
import onnx

import castopt.onnx.utils as onnx_utils
from castopt.onnx.logging_config import logger


class ReferenceRunner:
    """A class to run ONNX models with ONNXRuntime for reference inference."""

    def __init__(self, model: onnx.ModelProto, providers: list[str] = ["CPUExecutionProvider"]):
        """Initialize with an ONNX model."""
        self.model = model
        self.input_names = onnx_utils.get_input_names(self.model)
        self.output_names = onnx_utils.get_output_names(self.model)
        self.providers = providers

    def _validate_inputs(self, inputs):
        """Validate that input names match the model."""
        if sorted(self.input_names) != sorted(inputs.keys()):
            raise ValueError("Input names from ONNX model do not match provided input names.")

    def _load_inputs(self, inputs):
        """Get data loader from inputs or create random data loader if no inputs provided."""
        from polygraphy.comparator import DataLoader

        if inputs is None:
            # Random values in [-1, 1], dynamic dimensions default to 1
            return DataLoader(val_range={"": (-1, 1)})
        if not isinstance(inputs, dict):
            raise ValueError(f"Invalid input type: {type(inputs)}. Supported input types: dict.")
        self._validate_inputs(inputs)
        return [inputs]

    def run(self, inputs: dict[str, np.ndarray] | None = None) -> OrderedDict:
        """Run inference with provided or random inputs.

        Returns:
            The inputs followed by the graph outputs, keyed by tensor name.
        """
        import onnxruntime as ort
        from polygraphy.backend.onnx import BytesFromOnnx
        from polygraphy.backend.onnxrt import OnnxrtRunner, SessionFromOnnx
        from polygraphy.comparator import Comparator

        logger.info("Running ONNX Runtime to obtain reference outputs...")
        # Set ONNX Runtime log level to ERROR to suppress warnings
        ort.set_default_logger_severity(3)

        serialize_onnx = BytesFromOnnx(self.model)
        build_onnxrt_session = SessionFromOnnx(serialize_onnx, providers=self.providers)
        runners = [OnnxrtRunner(build_onnxrt_session)]
        data_loader = self._load_inputs(inputs)

        # Temporarily redirect stdout to suppress Comparator.run() output
        stdout = sys.stdout
        string_buffer = io.StringIO()
        sys.stdout = string_buffer
        try:
            results = Comparator.run(runners, data_loader=data_loader)
        finally:
            captured_output = string_buffer.getvalue()
            sys.stdout = stdout

        if not results:
            logger.error(f"ONNXRuntime execution failed with output:\n{captured_output}")
            raise Exception("ONNXRuntime failed to run, see logs for details")

        output_dict = OrderedDict(results[0][1][0])
        input_data = next(iter(data_loader))

        combined_dict = OrderedDict()
        combined_dict.update(input_data)
        combined_dict.update(output_dict)
        return combined_dict


def compare_outputs(
    reference: dict[str, np.ndarray],
    test: dict[str, np.ndarray],
    output_names: list[str],
    rtol: float = 1e-3,
    atol: float = 1e-3,
) -> list[str]:
    """Compares the named outputs of two runs.

    Returns:
        Names of the outputs that are missing from either run or differ beyond the tolerances.
    """
    mismatches = []
    for name in output_names:
        if name not in reference or name not in test:
            mismatches.append(name)
            continue
        ref = np.asarray(reference[name], dtype=np.float64)
        out = np.asarray(test[name], dtype=np.float64)
        if ref.shape != out.shape:
            logger.debug(f"Output {name} has shape {out.shape}, expected {ref.shape}")
            mismatches.append(name)
        elif not np.allclose(ref, out, rtol=rtol, atol=atol):
            logger.debug(f"Output {name} differs: max abs diff {np.max(np.abs(ref - out))}")
            mismatches.append(name)
    return mismatches
