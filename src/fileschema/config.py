from glob import glob
import logging
import os
import re
from typing import Annotated, Literal, Self, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.settings import (
    DEFAULT_FILENAME_PREFIX,
    DEFAULT_MAX_PARALLEL_READS,
    DEFAULT_MAX_PARALLEL_WRITES,
    DEFAULT_SHARD_NAME_TEMPLATE,
)

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True, populate_by_name=True)


class ReadConfiguration(StrictBaseModel):
    """
    Read job settings.

    schema_text:
      Inline schema text, or a path to a file holding it. Given as "schema".
    filepattern:
      Static patterns. Leave unset when patterns arrive as an input row stream.
    poll_interval_millis:
      Enables streaming mode: re-scan the patterns at this interval.
    terminate_after_seconds_since_new_output:
      Streaming only. Ends the session after this long without a new file.
    """
    format: str
    schema_text: str = Field(alias="schema")
    filepattern: str | list[str] | None = None
    poll_interval_millis: int | None = Field(default=None, gt=0)
    terminate_after_seconds_since_new_output: int | None = Field(default=None, ge=0)
    max_parallel_reads: int = Field(default=DEFAULT_MAX_PARALLEL_READS, ge=1)

    @model_validator(mode="after")
    def validate_configuration(self) -> Self:
        if not self.format:
            raise ValueError("format must be a non-empty string")

        if not self.schema_text.strip():
            raise ValueError("schema must be a non-empty string")

        if self.terminate_after_seconds_since_new_output is not None and self.poll_interval_millis is None:
            raise ValueError("terminate_after_seconds_since_new_output requires poll_interval_millis (streaming mode)")

        if isinstance(self.filepattern, list) and not self.filepattern:
            raise ValueError("filepattern list must not be empty")

        return self

    @property
    def is_streaming(self) -> bool:
        return self.poll_interval_millis is not None

    @property
    def patterns(self) -> list[str]:
        if self.filepattern is None:
            return []
        if isinstance(self.filepattern, str):
            return [self.filepattern]
        return list(self.filepattern)


class WriteConfiguration(StrictBaseModel):
    """Write job settings. File names are <output_directory>/<prefix><shard template><suffix>."""
    format: str
    schema_text: str = Field(alias="schema")
    output_directory: str
    filename_prefix: str = DEFAULT_FILENAME_PREFIX
    shard_name_template: str = DEFAULT_SHARD_NAME_TEMPLATE
    filename_suffix: str | None = None
    num_shards: int | None = Field(default=None, ge=1)
    max_parallel_writes: int = Field(default=DEFAULT_MAX_PARALLEL_WRITES, ge=1)

    @model_validator(mode="after")
    def validate_configuration(self) -> Self:
        if not self.format:
            raise ValueError("format must be a non-empty string")

        if not self.output_directory:
            raise ValueError("output_directory must be a non-empty string")

        if not re.search(r"S+", self.shard_name_template) or not re.search(r"N+", self.shard_name_template):
            raise ValueError(
                f"shard_name_template '{self.shard_name_template}' must contain a run of 'S' (shard index) "
                "and a run of 'N' (shard count)"
            )

        if os.sep in self.filename_prefix or "/" in self.filename_prefix:
            raise ValueError(f"filename_prefix '{self.filename_prefix}' must not contain a path separator")

        return self


class ReadJob(StrictBaseModel):
    name: str
    kind: Literal["read"]
    read: ReadConfiguration


class WriteJob(StrictBaseModel):
    """Copies rows from a batch read into a write. destination_field picks the destination per row."""
    name: str
    kind: Literal["write"]
    source: ReadConfiguration
    write: WriteConfiguration
    destination_field: str | None = None


JobSpec = Annotated[Union[ReadJob, WriteJob], Field(discriminator="kind")]


class _JobFile(StrictBaseModel):
    job: JobSpec


def load_configurations_from_directory(directory_path: str) -> list[ReadJob | WriteJob]:
    file_paths = sorted(glob(os.path.join(directory_path, "*.yaml")))

    jobs: dict[str, ReadJob | WriteJob] = {}
    for file_path in file_paths:
        with open(file_path, "r") as file:
            config_yaml = yaml.safe_load(file)
            try:
                job = _JobFile.model_validate({"job": config_yaml}).job

                if job.name in jobs:
                    raise ValueError(f"Duplicate job name '{job.name}' found in file: {file_path}")

                jobs[job.name] = job

            except Exception as e:
                raise ValueError(f"Error loading job config from {file_path}: {e}") from e

    if not jobs:
        logger.warning(f"No job configuration files found in directory: {directory_path}")

    return list(jobs.values())
