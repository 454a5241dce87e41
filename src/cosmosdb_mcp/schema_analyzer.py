"""Best-effort schema profiling over a sample of documents.

Fields are visited to a depth of three levels from the document root and
identified by dotted path (``address.city``). Arrays are classified but not
descended into.
"""

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .driver import ContainerHandle, Document
from .logging_manager import get_logger
from .query_builder import validate_positive_int

logger = get_logger(__name__)

DEFAULT_SAMPLE_SIZE = 100
MAX_DEPTH = 3
MAX_PROPERTIES = 50
MAX_EXAMPLES = 5
TYPE_SEPARATOR = " | "

UNDEFINED = object()

NESTED_TYPES = ('object', 'array')


def classify_value(value: Any) -> str:
    """Map a decoded JSON value to its type tag."""
    if value is None:
        return 'null'
    if value is UNDEFINED:
        return 'undefined'
    if isinstance(value, (list, tuple)):
        return 'array'
    if isinstance(value, (datetime.date, datetime.datetime)):
        return 'date'
    # bool is a subclass of int
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    return 'object'


@dataclass
class PropertyStat:
    """Scratch accumulator for one dotted path."""
    count: int = 0
    types: Dict[str, None] = field(default_factory=dict)
    null_count: int = 0
    examples: List[Any] = field(default_factory=list)

    def observe(self, value: Any, tag: str, first_in_document: bool = True) -> None:
        """Record one occurrence; count and null count move once per document."""
        self.types.setdefault(tag, None)
        if first_in_document:
            self.count += 1
        if tag in ('null', 'undefined'):
            if first_in_document:
                self.null_count += 1
        elif len(self.examples) < MAX_EXAMPLES:
            self.examples.append(value)


@dataclass(frozen=True)
class PropertyAnalysis:
    name: str
    type: str
    frequency: float
    null_count: int
    examples: List[Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.type,
            'frequency': self.frequency,
            'nullCount': self.null_count,
            'examples': list(self.examples)
        }


@dataclass(frozen=True)
class NestedStructure:
    path: str
    type: str
    frequency: float

    def to_dict(self) -> Dict[str, Any]:
        return {'path': self.path, 'type': self.type, 'frequency': self.frequency}


@dataclass(frozen=True)
class SchemaAnalysis:
    """Sampled schema summary of a container."""
    sample_size: int = 0
    common_properties: List[PropertyAnalysis] = field(default_factory=list)
    data_types: Dict[str, int] = field(default_factory=dict)
    nested_structures: List[NestedStructure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sampleSize': self.sample_size,
            'commonProperties': [prop.to_dict() for prop in self.common_properties],
            'dataTypes': dict(self.data_types),
            'nestedStructures': [nested.to_dict() for nested in self.nested_structures]
        }


def _walk(obj: Dict[str, Any], prefix: str, depth: int,
          stats: Dict[str, PropertyStat], data_types: Dict[str, int],
          seen: Set[str]) -> None:
    # A literal "a.b" key and a nested a -> b share one path; count it once per document
    if depth <= 0:
        return

    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        tag = classify_value(value)

        data_types[tag] = data_types.get(tag, 0) + 1
        stats.setdefault(path, PropertyStat()).observe(value, tag, path not in seen)
        seen.add(path)

        if tag == 'object' and isinstance(value, dict):
            _walk(value, path, depth - 1, stats, data_types, seen)


def analyze_documents(documents: List[Document]) -> SchemaAnalysis:
    """Profile a sample of documents.

    An empty sample yields a zero-valued analysis.
    """
    if not documents:
        return SchemaAnalysis()

    stats: Dict[str, PropertyStat] = {}
    data_types: Dict[str, int] = {}

    for document in documents:
        if isinstance(document, dict):
            _walk(document, '', MAX_DEPTH, stats, data_types, set())

    sample_size = len(documents)
    properties = [
        PropertyAnalysis(
            name=path,
            type=TYPE_SEPARATOR.join(stat.types),
            frequency=stat.count / sample_size,
            null_count=stat.null_count,
            examples=stat.examples[:MAX_EXAMPLES]
        )
        for path, stat in stats.items()
    ]
    # sorted() is stable, so equally frequent paths keep first-seen order
    properties = sorted(properties, key=lambda prop: prop.frequency, reverse=True)[:MAX_PROPERTIES]

    nested = [
        NestedStructure(path=prop.name, type=tag, frequency=prop.frequency)
        for prop in properties
        for tag in stats[prop.name].types
        if tag in NESTED_TYPES
    ]

    return SchemaAnalysis(
        sample_size=sample_size,
        common_properties=properties,
        data_types=data_types,
        nested_structures=nested
    )


class SchemaAnalyzer:
    """Samples a container and profiles the documents it returns."""

    def __init__(self, default_sample_size: int = DEFAULT_SAMPLE_SIZE):
        self.default_sample_size = default_sample_size

    async def analyze_container(self, container: ContainerHandle,
                                sample_size: Optional[int] = None) -> SchemaAnalysis:
        sample_size = (self.default_sample_size if sample_size is None
                       else validate_positive_int(sample_size, 'sample_size'))
        documents = await container.sample(sample_size)
        analysis = analyze_documents(documents)

        logger.debug("Analyzed container schema",
                     container_id=container.id,
                     sampled=analysis.sample_size,
                     properties=len(analysis.common_properties))
        return analysis
