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

"""Logger shared by the cast propagation pass and the ONNX helpers it calls.

Records from ``castopt.onnx`` and its children are prefixed with ``[castopt][cast_propagation]``
and go to stdout. ``configure_logging`` can also mirror them to a file, which is what the
``--log_file`` option of the command line tool does.
"""

import logging
import os
import sys

LOG_PREFIX = "[castopt][cast_propagation]"

logger = logging.getLogger("castopt.onnx")


def _file_handler(log_file: str, formatter: logging.Formatter) -> logging.Handler | None:
    log_dir = os.path.dirname(log_file)
    try:
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(log_file)
    except OSError as e:
        print(f"{LOG_PREFIX} - ERROR - Cannot write logs to {log_file}: {e!s}", file=sys.stderr)
        print(f"{LOG_PREFIX} - INFO - Logging to stdout only.", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(level=logging.INFO, log_file=None):
    """Sets the level and handlers of the cast propagation logger.

    Args:
        level: Logging level, either a number or a name such as ``"DEBUG"``.
        log_file: Optional file that receives the same records as stdout.
    """
    logger.setLevel(level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(f"{LOG_PREFIX} - %(levelname)s - %(message)s")
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        file_handler = _file_handler(log_file, formatter)
        if file_handler is not None:
            handlers.append(file_handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False

    # Child loggers created with an explicit level would otherwise keep it
    for name in logging.root.manager.loggerDict:
        if name.startswith(f"{logger.name}."):
            logging.getLogger(name).setLevel(level)

    if log_file and len(handlers) > 1:
        logger.info(f"Writing cast propagation logs to {log_file}")


configure_logging()
