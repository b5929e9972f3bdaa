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

"""This module provides the command line interface (CLI) entry point for cast propagation."""

import argparse
import sys

from castopt.onnx import utils as onnx_utils
from castopt.onnx.cast_propagation.config import LOW_PRECISION_TYPES, CastPropagationConfig
from castopt.onnx.cast_propagation.convert import propagate_cast_ops_from_path
from castopt.onnx.logging_config import configure_logging, logger


def get_parser() -> argparse.ArgumentParser:
    """Get the argument parser for cast propagation."""
    parser = argparse.ArgumentParser()
    parser.add_argument("--onnx_path", type=str, required=True, help="Path to the ONNX model")
    parser.add_argument(
        "--output_path",
        type=str,
        help="Output filename to save the optimized ONNX model. If None, save it in the same dir as "
        "the original ONNX model with an appropriate suffix.",
    )
    parser.add_argument(
        "--low_precision_type",
        "-t",
        type=str,
        default="fp16",
        help="Narrow precision used by the casts of the model",
        choices=LOW_PRECISION_TYPES,
    )
    parser.add_argument(
        "--max_iterations",
        type=int,
        default=100,
        help="Maximum number of times the pass is applied while it keeps changing the model",
    )
    parser.add_argument(
        "--pass_through_ops",
        type=str,
        nargs="*",
        default=[],
        help="Additional op types that do not depend on the precision of their inputs",
    )
    parser.add_argument(
        "--precision_safe_ops",
        type=str,
        nargs="*",
        default=[],
        help="Additional op types that may run in either precision",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Compare the outputs of the original and the optimized model with ONNX Runtime",
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default="INFO",
        help="Log level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument("--log_file", type=str, help="Optional file to write the logs to")

    return parser


def main(argv=None):
    """Main entry point for the cast propagation command line interface.

    Args:
        argv: List of command line arguments.

    Returns:
        onnx.ModelProto: The optimized model.
    """
    parser = get_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    config = CastPropagationConfig(
        low_precision_type=args.low_precision_type,
        max_iterations=args.max_iterations,
        extra_pass_through_ops=args.pass_through_ops,
        extra_precision_safe_ops=args.precision_safe_ops,
        verify=args.verify,
    )
    model_out = propagate_cast_ops_from_path(args.onnx_path, config)

    output_path = args.output_path
    if output_path is None:
        output_path = args.onnx_path.replace(".onnx", ".castprop.onnx")

    onnx_utils.save_onnx(model_out, output_path)
    logger.info(f"Optimized model saved to {output_path}")
    return model_out


if __name__ == "__main__":
    main(sys.argv[1:])
