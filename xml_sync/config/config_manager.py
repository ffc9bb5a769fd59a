"""
Centralized configuration management for the XML synchronization engine.

This module provides the ConfigManager class that serves as the single source of truth
for all configuration management, including database connections, table schema
contracts, the field compatibility ruleset, processing parameters and
environment variable handling.
"""

import os
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field

import yaml

from .processing_defaults import ProcessingDefaults
from ..interfaces import ConfigurationManagerInterface
from ..models import TableSchema, ProcessingConfig, FieldRuleSet
from ..exceptions import ConfigurationError, SchemaNotFoundError


@dataclass
class DatabaseConfig:
    """Database configuration with environment variable support."""
    connection_string: str
    dialect: str = "mssql"
    driver: str = "ODBC Driver 17 for SQL Server"
    server: str = "localhost\\SQLEXPRESS"
    database: str = "GameConfigDB"
    trusted_connection: bool = True
    connection_timeout: int = 30
    command_timeout: int = 300
    schema_prefix: str = ""
    sqlite_path: str = ":memory:"

    @classmethod
    def from_environment(cls) -> 'DatabaseConfig':
        """Create database configuration from environment variables."""
        dialect = os.environ.get('XML_SYNC_DB_DIALECT', cls.dialect).lower()
        schema_prefix = os.environ.get('XML_SYNC_DB_SCHEMA_PREFIX', cls.schema_prefix)

        if dialect == "sqlite":
            sqlite_path = os.environ.get('XML_SYNC_DB_PATH', cls.sqlite_path)
            return cls(connection_string=sqlite_path, dialect=dialect, sqlite_path=sqlite_path)

        # Primary connection string from environment
        connection_string = os.environ.get('XML_SYNC_CONNECTION_STRING')
        if connection_string:
            return cls(connection_string=connection_string, dialect=dialect, schema_prefix=schema_prefix)

        # Build connection string from individual components
        driver = os.environ.get('XML_SYNC_DB_DRIVER', cls.driver)
        server = os.environ.get('XML_SYNC_DB_SERVER', cls.server)
        database = os.environ.get('XML_SYNC_DB_DATABASE', cls.database)
        trusted_connection = os.environ.get('XML_SYNC_DB_TRUSTED_CONNECTION', 'true').lower() == 'true'
        connection_timeout = int(os.environ.get('XML_SYNC_DB_CONNECTION_TIMEOUT', cls.connection_timeout))
        command_timeout = int(os.environ.get('XML_SYNC_DB_COMMAND_TIMEOUT', cls.command_timeout))

        connection_string = (
            f"DRIVER={{{driver}}};"
            f"SERVER={server};"
            f"DATABASE={database};"
        )
        if trusted_connection:
            connection_string += "Trusted_Connection=yes;"
        else:
            username = os.environ.get('XML_SYNC_DB_USERNAME', '')
            password = os.environ.get('XML_SYNC_DB_PASSWORD', '')
            connection_string += f"UID={username};PWD={password};"
        connection_string += (
            f"Connection Timeout={connection_timeout};"
            f"Application Name=xml_sync;"
            f"TrustServerCertificate=yes;"
        )

        return cls(
            connection_string=connection_string,
            dialect=dialect,
            driver=driver,
            server=server,
            database=database,
            trusted_connection=trusted_connection,
            connection_timeout=connection_timeout,
            command_timeout=command_timeout,
            schema_prefix=schema_prefix,
        )


@dataclass
class ProcessingParameters:
    """Processing parameters with environment variable support."""
    batch_size: int = ProcessingDefaults.BATCH_SIZE
    parallel_workers: int = ProcessingDefaults.WORKERS
    max_widenings_per_file: int = ProcessingDefaults.MAX_WIDENINGS_PER_FILE
    varchar_headroom: int = ProcessingDefaults.VARCHAR_HEADROOM
    max_varchar_length: int = ProcessingDefaults.MAX_VARCHAR_LENGTH
    sample_limit: int = ProcessingDefaults.SAMPLE_LIMIT

    @classmethod
    def from_environment(cls) -> 'ProcessingParameters':
        """Create processing parameters from environment variables."""
        return cls(
            batch_size=int(os.environ.get('XML_SYNC_BATCH_SIZE', cls.batch_size)),
            parallel_workers=int(os.environ.get('XML_SYNC_WORKERS', cls.parallel_workers)),
            max_widenings_per_file=int(os.environ.get('XML_SYNC_MAX_WIDENINGS', cls.max_widenings_per_file)),
            varchar_headroom=int(os.environ.get('XML_SYNC_VARCHAR_HEADROOM', cls.varchar_headroom)),
            max_varchar_length=int(os.environ.get('XML_SYNC_MAX_VARCHAR_LENGTH', cls.max_varchar_length)),
            sample_limit=int(os.environ.get('XML_SYNC_SAMPLE_LIMIT', cls.sample_limit)),
        )


@dataclass
class ConfigPaths:
    """Configuration file paths with environment variable support."""
    base_config_path: Path = field(default_factory=lambda: Path.cwd())
    schema_path: str = "config/schemas"
    rules_path: Optional[str] = None
    export_path: str = "output/xml"
    scratch_path: str = "output/validation"

    @classmethod
    def from_environment(cls, base_path: Optional[Union[str, Path]] = None) -> 'ConfigPaths':
        """Create configuration paths from environment variables."""
        if base_path:
            base_config_path = Path(base_path)
        else:
            base_config_path = Path(os.environ.get('XML_SYNC_CONFIG_PATH', Path.cwd()))

        return cls(
            base_config_path=base_config_path,
            schema_path=os.environ.get('XML_SYNC_SCHEMA_PATH', cls.schema_path),
            rules_path=os.environ.get('XML_SYNC_RULES_PATH', cls.rules_path),
            export_path=os.environ.get('XML_SYNC_EXPORT_PATH', cls.export_path),
            scratch_path=os.environ.get('XML_SYNC_SCRATCH_PATH', cls.scratch_path),
        )

    def resolve(self, relative: Union[str, Path]) -> Path:
        path = Path(relative)
        return path if path.is_absolute() else self.base_config_path / path


class ConfigManager(ConfigurationManagerInterface):
    """
    Centralized configuration manager serving as single source of truth.

    This class consolidates all configuration management including:
    - Database connection configuration
    - Processing parameters
    - Table schema contract loading and saving
    - Field compatibility ruleset loading
    - File path management
    """

    SCHEMA_SUFFIXES = ('.json', '.yaml', '.yml')

    def __init__(self, base_config_path: Optional[Union[str, Path]] = None):
        """
        Initialize the centralized configuration manager.

        Args:
            base_config_path: Base path for configuration files. If None, uses current directory.
        """
        self.logger = logging.getLogger(__name__)

        # Load configuration from environment variables
        self.paths = ConfigPaths.from_environment(base_config_path)
        self.database_config = DatabaseConfig.from_environment()
        self.processing_params = ProcessingParameters.from_environment()

        # Cache for loaded configurations; workers share this instance
        self._schema_cache: Dict[str, TableSchema] = {}
        self._ruleset_cache: Dict[str, FieldRuleSet] = {}
        self._lock = threading.RLock()

        self.logger.info(f"ConfigManager initialized with base path: {self.paths.base_config_path}")
        self.logger.info(f"Database dialect: {self.database_config.dialect}")
        self.logger.info(f"Processing batch size: {self.processing_params.batch_size}")

    @property
    def schema_dir(self) -> Path:
        return self.paths.resolve(self.paths.schema_path)

    @property
    def export_dir(self) -> Path:
        return self.paths.resolve(self.paths.export_path)

    @property
    def scratch_dir(self) -> Path:
        return self.paths.resolve(self.paths.scratch_path)

    def get_database_connection_string(self) -> str:
        """
        Get database connection string.

        Returns:
            Database connection string configured from environment variables
        """
        return self.database_config.connection_string

    def get_processing_config(self) -> ProcessingConfig:
        """
        Get processing configuration with all parameters.

        Returns:
            ProcessingConfig object with environment-configured values
        """
        return ProcessingConfig(
            batch_size=self.processing_params.batch_size,
            parallel_workers=self.processing_params.parallel_workers,
            max_widenings_per_file=self.processing_params.max_widenings_per_file,
            varchar_headroom=self.processing_params.varchar_headroom,
            max_varchar_length=self.processing_params.max_varchar_length,
            sample_limit=self.processing_params.sample_limit,
        )

    def _schema_file(self, table_name: str) -> Optional[Path]:
        for suffix in self.SCHEMA_SUFFIXES:
            candidate = self.schema_dir / f"{table_name}{suffix}"
            if candidate.exists():
                return candidate
        return None

    def has_table_schema(self, table_name: str) -> bool:
        with self._lock:
            return table_name in self._schema_cache or self._schema_file(table_name) is not None

    def load_table_schema(self, table_name: str) -> TableSchema:
        """
        Load a table schema contract with caching.

        Args:
            table_name: Logical table name; the contract is <schema_dir>/<table>.json

        Returns:
            Loaded table schema

        Raises:
            SchemaNotFoundError: If no contract exists
            ConfigurationError: If the contract cannot be parsed
        """
        with self._lock:
            if table_name in self._schema_cache:
                self.logger.debug(f"Returning cached table schema for {table_name}")
                return self._schema_cache[table_name]

            full_path = self._schema_file(table_name)
            if full_path is None:
                raise SchemaNotFoundError(
                    f"No schema contract for table {table_name} in {self.schema_dir}", table_name
                )

            try:
                with open(full_path, 'r', encoding='utf-8') as file:
                    if full_path.suffix.lower() in ['.yaml', '.yml']:
                        schema_data = yaml.safe_load(file)
                    else:
                        schema_data = json.load(file)
            except (json.JSONDecodeError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to parse schema contract {full_path}: {e}")
            except OSError as e:
                raise ConfigurationError(f"Failed to read schema contract {full_path}: {e}")

            try:
                schema = TableSchema.from_dict(schema_data)
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid schema contract {full_path}: {e}")

            self._schema_cache[table_name] = schema
            self.logger.info(f"Loaded table schema for {table_name} from {full_path}")
            return schema

    def save_table_schema(self, schema: TableSchema, ddl: Optional[str] = None) -> Path:
        """
        Persist a table schema contract, plus its DDL script when given.

        Returns:
            Path of the written JSON contract
        """
        with self._lock:
            self.schema_dir.mkdir(parents=True, exist_ok=True)
            contract_path = self.schema_dir / f"{schema.table_name}.json"
            tmp_path = contract_path.with_suffix('.json.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as file:
                json.dump(schema.to_dict(), file, indent=2, ensure_ascii=False)
            os.replace(tmp_path, contract_path)

            if ddl is not None:
                (self.schema_dir / f"{schema.table_name}.sql").write_text(ddl, encoding='utf-8')

            self._schema_cache[schema.table_name] = schema
            self.logger.info(f"Saved table schema for {schema.table_name} to {contract_path}")
            return contract_path

    def list_table_schemas(self) -> List[str]:
        if not self.schema_dir.exists():
            return []
        names = {
            p.stem for p in self.schema_dir.iterdir()
            if p.suffix.lower() in self.SCHEMA_SUFFIXES
        }
        return sorted(names)

    def load_field_rules(self, rules_path: Optional[Union[str, Path]] = None) -> FieldRuleSet:
        """
        Load the field compatibility ruleset with caching.

        Args:
            rules_path: Optional ruleset path. If None, uses the configured path or the packaged default.
        """
        # Imported here to keep config free of validation imports at module load
        from ..validation.field_filter import load_ruleset

        if rules_path is None and self.paths.rules_path:
            rules_path = self.paths.resolve(self.paths.rules_path)
        key = str(rules_path) if rules_path else "<default>"
        with self._lock:
            if key not in self._ruleset_cache:
                self._ruleset_cache[key] = load_ruleset(rules_path)
                self.logger.info(f"Loaded field ruleset {self._ruleset_cache[key].version} from {key}")
            return self._ruleset_cache[key]

    def validate_configuration(self) -> bool:
        """
        Validate all configuration settings.

        Returns:
            True if all configurations are valid

        Raises:
            ConfigurationError: If any configuration is invalid
        """
        errors = []

        if not self.database_config.connection_string:
            errors.append("Database connection string is empty")
        if self.database_config.dialect not in ("mssql", "sqlite"):
            errors.append(f"Unsupported database dialect: {self.database_config.dialect}")

        if not self.paths.base_config_path.exists():
            errors.append(f"Base configuration path does not exist: {self.paths.base_config_path}")
        if self.paths.rules_path and not self.paths.resolve(self.paths.rules_path).exists():
            errors.append(f"Field ruleset does not exist: {self.paths.rules_path}")

        if self.processing_params.batch_size <= 0:
            errors.append("Batch size must be greater than 0")
        if self.processing_params.parallel_workers <= 0:
            errors.append("Parallel workers must be greater than 0")
        if self.processing_params.max_widenings_per_file < 0:
            errors.append("Max widenings per file cannot be negative")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

        self.logger.info("Configuration validation passed")
        return True

    def get_configuration_summary(self) -> Dict[str, Any]:
        """
        Get a summary of all configuration settings.

        Returns:
            Dictionary containing configuration summary
        """
        return {
            'database': {
                'dialect': self.database_config.dialect,
                'server': self.database_config.server,
                'database': self.database_config.database,
                'driver': self.database_config.driver,
                'trusted_connection': self.database_config.trusted_connection,
                'connection_timeout': self.database_config.connection_timeout,
            },
            'processing': {
                'batch_size': self.processing_params.batch_size,
                'parallel_workers': self.processing_params.parallel_workers,
                'max_widenings_per_file': self.processing_params.max_widenings_per_file,
                'varchar_headroom': self.processing_params.varchar_headroom,
                'max_varchar_length': self.processing_params.max_varchar_length,
                'sample_limit': self.processing_params.sample_limit,
            },
            'paths': {
                'base_config_path': str(self.paths.base_config_path),
                'schema_path': self.paths.schema_path,
                'rules_path': self.paths.rules_path,
                'export_path': self.paths.export_path,
                'scratch_path': self.paths.scratch_path,
            }
        }

    def clear_cache(self) -> None:
        """Clear all cached configurations."""
        with self._lock:
            self._schema_cache.clear()
            self._ruleset_cache.clear()

        self.logger.info("Configuration cache cleared")

    def reload_configuration(self) -> None:
        """Reload configuration from environment variables and clear cache."""
        self.database_config = DatabaseConfig.from_environment()
        self.processing_params = ProcessingParameters.from_environment()
        self.clear_cache()

        self.logger.info("Configuration reloaded from environment variables")


# Global configuration manager instance
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(base_config_path: Optional[Union[str, Path]] = None) -> ConfigManager:
    """
    Get the global configuration manager instance.

    Args:
        base_config_path: Base path for configuration files. Only used on first call.

    Returns:
        Global ConfigManager instance
    """
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(base_config_path)

    return _global_config_manager


def reset_config_manager() -> None:
    """Reset the global configuration manager instance."""
    global _global_config_manager
    _global_config_manager = None
