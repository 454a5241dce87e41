"""Sampling-based container statistics.

The document count is exact (a count aggregation); total size and the
per-partition distribution are extrapolated from a bounded sample instead of
a full scan.

Per-partition ``sizeInKB`` reports the bytes seen in the sample only, while
``documentCount`` is extrapolated to the whole container. ``extrapolatedSizeInKB``
carries the scaled size next to it.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .driver import ContainerHandle, Document
from .error_handler import SchemaError
from .logging_manager import get_logger
from .query_builder import validate_positive_int

logger = get_logger(__name__)

DEFAULT_SAMPLE_SIZE = 1000
UNDEFINED_PARTITION = "undefined"

_MISSING = object()


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values, as counts expect."""
    return int(math.floor(value + 0.5))


def document_size_bytes(document: Any) -> int:
    """UTF-8 length of the compact JSON serialization of a document."""
    serialized = json.dumps(document, separators=(',', ':'), ensure_ascii=False, default=str)
    return len(serialized.encode('utf-8'))


def partition_key_segments(path: str) -> List[str]:
    """Split a partition key path such as ``/tenant/id`` into its segments."""
    return [segment for segment in path.strip().lstrip('/').split('/') if segment]


def extract_partition_value(document: Any, segments: List[str]) -> Any:
    """Walk key segments through the document; a missing segment yields a sentinel."""
    value = document
    for segment in segments:
        if isinstance(value, dict) and segment in value:
            value = value[segment]
        else:
            return _MISSING
    return value


def partition_bucket(value: Any) -> str:
    """Stringify a partition key value; missing or null values share one bucket."""
    if value is _MISSING or value is None:
        return UNDEFINED_PARTITION
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'), sort_keys=True, default=str)
    return str(value)


@dataclass
class PartitionStat:
    """Scratch accumulator for one partition key value."""
    count: int = 0
    size_bytes: int = 0


@dataclass(frozen=True)
class PartitionKeyStats:
    """Estimated distribution of one partition key value."""
    partition_key_value: str
    document_count: int
    size_in_kb: int
    extrapolated_size_in_kb: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'partitionKeyValue': self.partition_key_value,
            'documentCount': self.document_count,
            'sizeInKB': self.size_in_kb,
            'extrapolatedSizeInKB': self.extrapolated_size_in_kb
        }


@dataclass(frozen=True)
class ContainerStats:
    """Document count, estimated size and partition distribution of a container."""
    document_count: int
    size_in_kb: int
    sample_size: int
    partition_key_path: Optional[str] = None
    partition_key_statistics: List[PartitionKeyStats] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'documentCount': self.document_count,
            'sizeInKB': self.size_in_kb,
            'sampleSize': self.sample_size,
            'partitionKeyPath': self.partition_key_path,
            'partitionKeyStatistics': [stats.to_dict() for stats in self.partition_key_statistics]
        }


def compute_stats(document_count: int, partition_key_path: str,
                  documents: List[Document]) -> ContainerStats:
    """Extrapolate container statistics from an exact count and a sample."""
    segments = partition_key_segments(partition_key_path)
    partitions: Dict[str, PartitionStat] = {}
    total_bytes = 0

    for document in documents:
        size = document_size_bytes(document)
        total_bytes += size

        bucket = partition_bucket(extract_partition_value(document, segments))
        stat = partitions.setdefault(bucket, PartitionStat())
        stat.count += 1
        stat.size_bytes += size

    sampled = len(documents)
    avg_doc_size = total_bytes / sampled if sampled else 0
    estimated_size_kb = round_half_up(document_count * avg_doc_size / 1024)

    partition_statistics = []
    for value, stat in partitions.items():
        share = stat.count / sampled
        partition_statistics.append(PartitionKeyStats(
            partition_key_value=value,
            document_count=round_half_up(share * document_count),
            size_in_kb=round_half_up(stat.size_bytes / 1024),
            extrapolated_size_in_kb=round_half_up(
                (stat.size_bytes / sampled) * document_count / 1024)
        ))

    return ContainerStats(
        document_count=document_count,
        size_in_kb=estimated_size_kb,
        sample_size=sampled,
        partition_key_path=partition_key_path,
        partition_key_statistics=partition_statistics
    )


class StatsSampler:
    """Estimates document count, storage size and partition distribution."""

    def __init__(self, default_sample_size: int = DEFAULT_SAMPLE_SIZE):
        self.default_sample_size = default_sample_size

    async def sample_stats(self, container: ContainerHandle,
                           sample_size: Optional[int] = None) -> ContainerStats:
        """Compute statistics for a container.

        Args:
            container: Container handle from an active connection
            sample_size: Documents to sample (default 1000)

        Raises:
            NotFoundError: If the container does not exist
            SchemaError: If the container has no partition key
            BackendError: If the backend fails
        """
        sample_size = (self.default_sample_size if sample_size is None
                       else validate_positive_int(sample_size, 'sample_size'))

        document_count = await container.count()

        definition = await container.read_definition()
        paths = ((definition or {}).get('partitionKey') or {}).get('paths') or []
        if not paths:
            raise SchemaError(
                f"Container {container.id} does not have a valid partition key defined",
                container_id=container.id
            )

        documents = await container.sample(sample_size)
        stats = compute_stats(document_count, paths[0], documents)

        logger.debug("Computed container statistics",
                     container_id=container.id,
                     document_count=document_count,
                     sampled=stats.sample_size,
                     partitions=len(stats.partition_key_statistics))
        return stats
