"""Transfer pipeline adapters."""

from postgres_db_fork.infrastructure.transfers.streaming_pipeline import (
    StreamingTransferPipeline,
    build_dump_args,
    build_restore_args,
    table_filter_flags,
)

__all__ = [
    "StreamingTransferPipeline",
    "build_dump_args",
    "build_restore_args",
    "table_filter_flags",
]
