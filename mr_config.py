"""
Settings for the MapReduce master, its workers and the CLI.

Every field can be overridden with an MR_-prefixed environment variable,
e.g. MR_NUM_REDUCERS=8 or MR_FILESYSTEM=hdfs.
"""

import os
import logging
from subprocess import check_output
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG = logging.getLogger("config")

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


class Config(BaseSettings):
    """Settings shared by the master, its workers and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="MR_",
        extra="ignore",
        frozen=True,
    )

    filesystem: Literal["local", "hdfs"] = "local"
    hdfs_host: str = "boss"
    hdfs_port: int = Field(default=9000, ge=1, le=65535)
    num_reducers: int = Field(default=4, ge=1, description="Reduce partitions per job")
    num_workers: int = Field(default=4, ge=1, description="Worker threads")
    task_attempts: int = Field(default=2, ge=1, description="Attempts per task before the job fails")
    output_separator: str = Field(default=",", description="Key/value separator in output files")
    log_level: str = "INFO"

    @field_validator("filesystem", mode="before")
    @classmethod
    def _lower_filesystem(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls) -> "Config":
        return cls()

    def override(self, **changes) -> "Config":
        """Validated copy of this config with every non-None keyword applied."""
        values = self.model_dump()
        values.update({k: v for k, v in changes.items() if v is not None})
        return type(self)(**values)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)


def setup_hdfs_classpath():
    """pyarrow's HadoopFileSystem needs the Hadoop jars on CLASSPATH."""
    if "HADOOP_HOME" not in os.environ:
        LOG.warning("HADOOP_HOME is not set; relying on the existing CLASSPATH")
        return
    try:
        os.environ["CLASSPATH"] = str(check_output([os.environ["HADOOP_HOME"]+"/bin/hdfs", "classpath", "--glob"]), "utf-8")
    except Exception as e:
        LOG.warning("Could not set HDFS classpath (HDFS may not be ready): %s", e)
