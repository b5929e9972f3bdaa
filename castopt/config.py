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

"""Castopt's pydantic BaseModel used for any type of configuration in the optimization passes."""

from collections.abc import ItemsView, Iterator, KeysView, ValuesView
from typing import Any

import pydantic
from pydantic import BaseModel, Field
from pydantic_core import PydanticUndefined

# A simple type alias for a config dictionary that is used as input to initialize a CastoptBaseConfig.
ConfigDict = dict[str, Any]


def CastoptField(default: Any = PydanticUndefined, **kwargs):  # noqa: N802
    """A pydantic.Field that enforces setting a default value."""
    assert default is not PydanticUndefined, "A default value must be set for CastoptField."
    return Field(default=default, **kwargs)


class CastoptBaseConfig(BaseModel):
    """Our config base class for pass configuration.

    The base class extends the capabilities of pydantic's BaseModel to provide additional methods
    and properties for easier access and manipulation of the configuration.
    """

    model_config = pydantic.ConfigDict(extra="forbid", validate_assignment=True)

    def model_dump(self, **kwargs):
        """Dump the config to a dictionary with aliases and no warnings by default."""
        kwargs = {"by_alias": True, "warnings": False, **kwargs}
        return super().model_dump(**kwargs)

    def model_dump_json(self, **kwargs):
        """Dump the config to a json with aliases and no warnings by default."""
        kwargs = {"by_alias": True, "warnings": False, **kwargs}
        return super().model_dump_json(**kwargs)

    def get_field_name_from_key(self, key: str) -> str:
        """Get the field name from the given key (can be name or alias of field)."""
        assert isinstance(key, str), f"key must be a string, got {type(key)}"

        if key in type(self).model_fields:
            return key
        for name, field_info in type(self).model_fields.items():
            if field_info.alias == key:
                return name
        raise AttributeError(f"Key {key} not found in the config.")

    def __contains__(self, key: str) -> bool:
        """Check if the given key is present in the config by its actual name or alias."""
        try:
            self.get_field_name_from_key(key)
            return True
        except AttributeError:
            return False

    def __getitem__(self, key: str) -> Any:
        """Get the value for the given key (can be name or alias of field)."""
        return getattr(self, self.get_field_name_from_key(key))

    def __setitem__(self, key: str, value: Any) -> None:
        """Set the value for the given key (can be name or alias of field)."""
        setattr(self, self.get_field_name_from_key(key), value)

    def get(self, key: str, default: Any = None) -> Any:
        """Get the value for the given key (can be name or alias) or default if not found."""
        try:
            return self[key]
        except AttributeError:
            return default

    def __len__(self) -> int:
        """Return the length of the config."""
        return len(type(self).model_fields)

    def __iter__(self) -> Iterator[str]:  # type: ignore[override]
        """Iterate over aliases (or name if alias is not defined) of fields."""
        for field_name, field_info in type(self).model_fields.items():
            yield field_info.alias or field_name

    def _get_kv_dict(self) -> dict[str, Any]:
        """Return a dictionary with keys as aliases if possible."""
        return {k: self[k] for k in self}

    def keys(self) -> KeysView[str]:
        """Return the keys (aliases prioritized over names) of the config."""
        return self._get_kv_dict().keys()

    def values(self) -> ValuesView[Any]:
        """Return the values of the config."""
        return self._get_kv_dict().values()

    def items(self) -> ItemsView[str, Any]:
        """Return the items of the config with keys as aliases if possible."""
        return self._get_kv_dict().items()

    def update(self, config: ConfigDict) -> None:
        """Update the config with the given config dictionary."""
        for key, value in config.items():
            self[key] = value
