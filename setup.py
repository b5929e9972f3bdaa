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

"""The package setup script for castopt customizing certain aspects of the installation process."""

import setuptools

version = "0.1.0"

# Required and optional dependencies ###############################################################
required_deps = [
    "numpy",
    "onnx-graphsurgeon",
    "onnx>=1.16.0",
    "onnxruntime>=1.20.0",
    "polygraphy>=0.49.22",
    "pydantic>=2.0",
]

optional_deps = {
    # linter tools
    "dev-lint": [
        "bandit[toml]==1.7.9",  # security/compliance checks
        "mypy==1.17.1",
        "pre-commit==4.3.0",
        "ruff==0.12.11",
    ],
    # testing
    "dev-test": [
        "coverage",
        "pytest",
        "pytest-cov",
        "pytest-timeout",
    ],
    # build/packaging tools
    "dev-build": [
        "setuptools>=80",
    ],
}

# create "compound" optional dependencies
optional_deps["dev"] = [deps for k in optional_deps for deps in optional_deps[k]]


if __name__ == "__main__":
    setuptools.setup(
        name="castopt",
        version=version,
        description="Cast propagation for mixed precision ONNX models.",
        long_description="Moves, cancels and fuses Cast nodes of FP32/FP16/BF16 ONNX models.",
        long_description_content_type="text/markdown",
        author="NVIDIA Corporation",
        license="Apache 2.0",
        classifiers=[
            "Programming Language :: Python :: 3",
            "Intended Audience :: Developers",
            "Intended Audience :: Science/Research",
            "Topic :: Scientific/Engineering :: Artificial Intelligence",
        ],
        python_requires=">=3.10",
        install_requires=required_deps,
        extras_require=optional_deps,
        packages=setuptools.find_namespace_packages(include=["castopt*"]),
        package_dir={"": "."},
        entry_points={
            "console_scripts": ["castopt-propagate=castopt.onnx.cast_propagation.__main__:main"],
        },
    )
