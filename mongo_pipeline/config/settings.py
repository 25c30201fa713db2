"""
Configuration management with connector-style dotted options and
environment-specific YAML settings.
"""
import os
from typing import Dict, Any, List, Mapping, Optional
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import yaml
from bson import json_util

from mongo_pipeline.interfaces.base import ConfigurationError, ID_FIELD


class OutputFormat(Enum):
    """Shape of the extractor's output value."""
    JSON = "json"
    ENVELOPE = "structured-envelope"

    @classmethod
    def parse(cls, value: str) -> 'OutputFormat':
        normalized = str(value).strip().lower()
        if normalized in ("avro", "envelope", "structured-envelope", "structured_envelope"):
            return cls.ENVELOPE
        if normalized == "json":
            return cls.JSON
        raise ConfigurationError(f"Unsupported output.format: {value!r}")


class MissingTimeFieldPolicy(Enum):
    """What the extractor does with documents lacking a usable time field."""
    SKIP = "skip"
    EMIT_ZERO = "emit_zero"


class WriteStrategy(Enum):
    """Sink write path."""
    MERGE = "merge"
    UPDATE_IF_NEWER = "update_if_newer"


# Alternative option names accepted for each canonical option.
_OPTION_ALIASES: Dict[str, List[str]] = {
    'connection.uri': ['mongo.uri'],
    'database': ['mongo.database'],
    'collection': ['mongo.collection'],
    'base.filter': ['mongo.base.filter'],
    'pipeline': ['mongo.pipeline'],
    'key.field': ['mongo.key.field'],
    'array.field.name': ['doc.array.field.name'],
    'array.field.dedup.keys': ['doc.array.field.dedup.keys'],
    'document.id.name': ['doc.id.name'],
    'comparison.date.field': ['upsert.date.field.name'],
}


def _option(props: Mapping[str, Any], name: str, default: Any = None) -> Any:
    for candidate in [name] + _OPTION_ALIASES.get(name, []):
        value = props.get(candidate)
        if value is not None and not (isinstance(value, str) and not value.strip()):
            return value
    return default


def _required(props: Mapping[str, Any], name: str) -> str:
    value = _option(props, name)
    if value is None:
        raise ConfigurationError(f"Missing required option '{name}'")
    return str(value)


def _as_json_text(props: Mapping[str, Any], name: str, default: str) -> str:
    """Extended-JSON text for an option given either as text or as a YAML mapping/list."""
    value = _option(props, name, default)
    if isinstance(value, (Mapping, list, tuple)):
        return json_util.dumps(value)
    return str(value)


def _as_int(props: Mapping[str, Any], name: str, default: int) -> int:
    value = _option(props, name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Option '{name}' must be an integer, got {value!r}")
    if result < 0:
        raise ConfigurationError(f"Option '{name}' must not be negative, got {result}")
    return result


def parse_dedup_keys(value: Any) -> List[str]:
    """Split a comma-separated dedup key list, rejecting blank entries."""
    if isinstance(value, (list, tuple)):
        keys = [str(item).strip() for item in value]
    else:
        keys = [part.strip() for part in str(value or '').split(',')]
    if not keys or any(not key for key in keys):
        raise ConfigurationError(f"Malformed array.field.dedup.keys: {value!r}")
    return keys


@dataclass
class ExtractorConfig:
    """Source-side options."""
    connection_uri: str
    database: str
    collection: str
    topic: str
    time_field: str
    base_filter: str = "{}"
    pipeline: str = "[]"
    key_field: Optional[str] = None
    poll_interval_ms: int = 60000
    output_format: OutputFormat = OutputFormat.JSON
    missing_time_field_policy: MissingTimeFieldPolicy = MissingTimeFieldPolicy.SKIP

    @classmethod
    def from_properties(cls, props: Mapping[str, Any]) -> 'ExtractorConfig':
        policy = str(_option(props, 'missing.time.field.policy', 'skip')).strip().lower()
        try:
            missing_policy = MissingTimeFieldPolicy(policy)
        except ValueError:
            raise ConfigurationError(f"Unsupported missing.time.field.policy: {policy!r}")

        return cls(
            connection_uri=_required(props, 'connection.uri'),
            database=_required(props, 'database'),
            collection=_required(props, 'collection'),
            topic=_required(props, 'topic'),
            time_field=_required(props, 'time.field'),
            base_filter=_as_json_text(props, 'base.filter', '{}'),
            pipeline=_as_json_text(props, 'pipeline', '[]'),
            key_field=_option(props, 'key.field'),
            poll_interval_ms=_as_int(props, 'poll.interval.ms', 60000),
            output_format=OutputFormat.parse(_option(props, 'output.format', 'json')),
            missing_time_field_policy=missing_policy,
        )


@dataclass
class MergerConfig:
    """Sink-side options."""
    connection_uri: str
    database: str
    collection: str
    write_strategy: WriteStrategy = WriteStrategy.MERGE
    array_field_name: Optional[str] = None
    array_field_dedup_keys: List[str] = field(default_factory=list)
    comparison_date_field: Optional[str] = None
    document_id_name: Optional[str] = None
    id_field: str = ID_FIELD

    @classmethod
    def from_properties(cls, props: Mapping[str, Any]) -> 'MergerConfig':
        strategy_name = str(_option(props, 'write.strategy', 'merge')).strip().lower()
        try:
            strategy = WriteStrategy(strategy_name)
        except ValueError:
            raise ConfigurationError(f"Unsupported write.strategy: {strategy_name!r}")

        array_field = _option(props, 'array.field.name')
        dedup_keys: List[str] = []
        if strategy == WriteStrategy.MERGE:
            if array_field is None:
                raise ConfigurationError("Missing required option 'array.field.name'")
            dedup_keys = parse_dedup_keys(_option(props, 'array.field.dedup.keys'))

        return cls(
            connection_uri=_required(props, 'connection.uri'),
            database=_required(props, 'database'),
            collection=_required(props, 'collection'),
            write_strategy=strategy,
            array_field_name=str(array_field) if array_field is not None else None,
            array_field_dedup_keys=dedup_keys,
            comparison_date_field=_option(props, 'comparison.date.field'),
            document_id_name=_option(props, 'document.id.name'),
        )


@dataclass
class OffsetStoreConfig:
    """Offset store configuration."""
    path: str = "data/offsets"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OffsetStoreConfig':
        return cls(**data)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    file_path: Optional[str] = None
    max_file_size: str = "10MB"
    backup_count: int = 5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoggingConfig':
        return cls(**data)


@dataclass
class PipelineSettings:
    """Main pipeline configuration."""
    environment: str
    debug: bool = False
    extractor: Optional[ExtractorConfig] = None
    merger: Optional[MergerConfig] = None
    offsets: OffsetStoreConfig = field(default_factory=OffsetStoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineSettings':
        """Create settings from dictionary."""
        data = dict(data)

        if data.get('extractor'):
            data['extractor'] = ExtractorConfig.from_properties(data['extractor'])
        else:
            data['extractor'] = None

        if data.get('merger'):
            data['merger'] = MergerConfig.from_properties(data['merger'])
        else:
            data['merger'] = None

        if data.get('offsets'):
            data['offsets'] = OffsetStoreConfig.from_dict(data['offsets'])
        else:
            data.pop('offsets', None)

        if data.get('logging'):
            data['logging'] = LoggingConfig.from_dict(data['logging'])
        else:
            data.pop('logging', None)

        return cls(**data)


class ConfigManager:
    """Manages configuration loading and environment-specific settings."""

    # env var -> list of nested paths; section-scoped paths only apply when the section exists
    ENV_MAPPINGS = {
        'MONGO_URI': [['extractor', 'connection.uri'], ['merger', 'connection.uri']],
        'OFFSET_STORE_PATH': [['offsets', 'path']],
        'LOG_LEVEL': [['logging', 'level']],
        'DEBUG': [['debug']],
    }
    SECTION_SCOPED = {'extractor', 'merger'}

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self._settings: Optional[PipelineSettings] = None
        self._environment = os.getenv("PIPELINE_ENV", "development")

    def load_config(self, environment: Optional[str] = None) -> PipelineSettings:
        """Load configuration for specified environment."""
        env = environment or self._environment

        base_config = self._load_config_file("base.yaml")
        env_config = self._load_config_file(f"{env}.yaml")

        merged_config = self._merge_configs(base_config, env_config)
        merged_config = self._apply_env_overrides(merged_config)
        merged_config['environment'] = env

        self._settings = PipelineSettings.from_dict(merged_config)
        return self._settings

    def get_settings(self) -> PipelineSettings:
        """Get current settings, loading if necessary."""
        if self._settings is None:
            return self.load_config()
        return self._settings

    def _load_config_file(self, filename: str) -> Dict[str, Any]:
        config_path = self.config_dir / filename

        if not config_path.exists():
            return {}

        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        for env_var, config_paths in self.ENV_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is None:
                continue

            for config_path in config_paths:
                if config_path[0] in self.SECTION_SCOPED and not config.get(config_path[0]):
                    continue

                current = config
                for key in config_path[:-1]:
                    if not isinstance(current.get(key), dict):
                        current[key] = {}
                    current = current[key]

                final_key = config_path[-1]
                if value.lower() in ('true', 'false'):
                    current[final_key] = value.lower() == 'true'
                else:
                    current[final_key] = value

        return config


config_manager = ConfigManager()


def get_settings() -> PipelineSettings:
    """Get current pipeline settings."""
    return config_manager.get_settings()
