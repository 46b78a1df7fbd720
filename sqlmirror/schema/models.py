"""
Schema config models consumed by the assembler.

Per-migration config modules may return either these models or plain
dictionaries; ``SchemaConfig.from_data`` validates the latter.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sqlmirror.errors import InvalidSchemaConfig


@dataclass(frozen=True)
class Chunk:
    """A reusable SQL fragment pair."""

    up: str
    down: str


# (table_name) -> "column_name type-and-constraints"
ColumnGenerator = Callable[[str], str]

# (table_name, resolved_columns) -> Chunk
TriggerGenerator = Callable[[str, Sequence[str]], Chunk]


class Extension(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique key used for deduplication")
    up: str
    down: str


class Function(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique key used for deduplication")
    up: str
    down: str
    # Applied to every table of the config, after the table's plugin triggers
    trigger: Optional[TriggerGenerator] = None


class Plugin(BaseModel):
    """Table-level bundle of extensions, functions, columns and triggers."""

    model_config = ConfigDict(frozen=True)

    name: str
    extensions: List[Extension] = Field(default_factory=list)
    functions: List[Function] = Field(default_factory=list)
    columns: List[ColumnGenerator] = Field(default_factory=list)
    triggers: List[TriggerGenerator] = Field(default_factory=list)


class Reference(BaseModel):
    column_name: str
    table_name_ref: str = Field(description="Name of another table in the same config")
    nullable: bool = False


class TableOptions(BaseModel):
    disable_id: bool = False


class Table(BaseModel):
    name: str
    columns: List[str] = Field(default_factory=list)
    references: List[Reference] = Field(default_factory=list)
    types: List[Chunk] = Field(default_factory=list)
    plugins: List[Plugin] = Field(default_factory=list)
    options: TableOptions = Field(default_factory=TableOptions)

    @field_validator("plugins", mode="before")
    @classmethod
    def _resolve_plugin_names(cls, value: Any) -> Any:
        # Literal configs may name built-in plugins: plugins=["timestamps"]
        if not isinstance(value, (list, tuple)):
            return value
        from sqlmirror.schema.chunks import PLUGINS

        resolved = []
        for plugin in value:
            if isinstance(plugin, str):
                if plugin not in PLUGINS:
                    raise ValueError(f"Unknown plugin '{plugin}' (known: {', '.join(sorted(PLUGINS))})")
                plugin = PLUGINS[plugin]
            resolved.append(plugin)
        return resolved


class SchemaConfig(BaseModel):
    extensions: List[Extension] = Field(default_factory=list)
    functions: List[Function] = Field(default_factory=list)
    tables: List[Table] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.extensions or self.functions or self.tables)

    @classmethod
    def from_data(cls, data: Union["SchemaConfig", Dict[str, Any]]) -> "SchemaConfig":
        """
        Validate raw config data.

        Args:
            data: A SchemaConfig instance or a plain dictionary

        Returns:
            Validated SchemaConfig

        Raises:
            InvalidSchemaConfig: If the data does not describe a schema config
        """
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidSchemaConfig(
                f"Invalid schema config: {e.error_count()} validation error(s)",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e
