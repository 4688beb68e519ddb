import logging
from typing import Any, BinaryIO, Iterable, Iterator

import pyarrow as pa
import pyarrow.parquet as pq

from fileschema.codecs.avro_codec import encode_row, parse_avro_schema, schema_to_avro_text
from fileschema.codecs.base_codec import Codec, decode_mapping
from fileschema.schema import Schema, to_arrow_schema

logger = logging.getLogger(__name__)

# Parquet jobs describe their rows with an Avro JSON schema, like the avro format.
PARQUET_BATCH_SIZE = 65536


def read_parquet_records(stream: BinaryIO) -> Iterator[dict[str, Any]]:
    parquet_file = pq.ParquetFile(stream)
    logger.debug(
        "Reading Parquet file: %s row groups, %s rows",
        parquet_file.metadata.num_row_groups,
        parquet_file.metadata.num_rows,
    )
    for batch in parquet_file.iter_batches(batch_size=PARQUET_BATCH_SIZE):
        yield from batch.to_pylist()


def write_parquet_records(stream: BinaryIO, schema: Schema, records: Iterable[dict[str, Any]]) -> None:
    table = pa.Table.from_pylist(list(records), schema=to_arrow_schema(schema))
    pq.write_table(table, stream, compression="snappy")


PARQUET_CODEC = Codec(
    identifier="parquet",
    suffix=".parquet",
    parse_schema=parse_avro_schema,
    schema_to_external=schema_to_avro_text,
    encode=encode_row,
    decode=decode_mapping,
    read_records=read_parquet_records,
    write_records=write_parquet_records,
)
