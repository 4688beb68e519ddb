import logging
import os
from logging.config import dictConfig

from core.settings import CONFIG_BASE_DIRECTORY_PATH, LOG_FOLDER, LOGGING_CONFIG
from fileschema.config import ReadJob, WriteJob, load_configurations_from_directory
from fileschema.read import read
from fileschema.write import WriteTransform

os.makedirs(LOG_FOLDER, exist_ok=True)
dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)


def run_read_job(job: ReadJob) -> int:
    row_count = 0
    for _ in read(job.read):
        row_count += 1
    logger.info("Job '%s' read %s rows.", job.name, row_count)
    return row_count


def run_write_job(job: WriteJob) -> int:
    rows = list(read(job.source))
    transform = WriteTransform(job.write)

    destination_field = job.destination_field
    key_fn = (lambda row: row[destination_field]) if destination_field else None

    result = transform.write(rows, key_fn)
    for filename in result.filenames:
        logger.info("Job '%s' wrote %s", job.name, filename)
    return result.rows_written_total


def main():
    jobs = load_configurations_from_directory(str(CONFIG_BASE_DIRECTORY_PATH))
    for job in jobs:
        if isinstance(job, ReadJob):
            run_read_job(job)
        else:
            run_write_job(job)


if __name__ == "__main__":
    main()
