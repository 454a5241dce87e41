"""Query text construction for the document listing tool.

Filter values always travel as query parameters. Field names cannot be
parameterized, so they are validated as dotted identifiers before being
interpolated into the query text.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from .error_handler import ValidationError

FIELD_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$')
ORDER_DIRECTIONS = ('ASC', 'DESC')

QueryParameters = List[Dict[str, Any]]


def validate_positive_int(value: Any, field_name: str) -> int:
    """Return ``value`` if it is an int greater than zero.

    Raises:
        ValidationError: For zero, negatives, bools and non-integers
    """
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {value!r}",
                              field_name=field_name)
    return value


def validate_field_name(name: str, field_name: str = 'filter_conditions') -> str:
    """Return the field name if it is a plain dotted identifier.

    Raises:
        ValidationError: If the name could inject query text
    """
    if not isinstance(name, str) or not FIELD_PATTERN.match(name):
        raise ValidationError(
            f"Invalid field name '{name}': only letters, digits, underscores and dots are allowed",
            field_name=field_name
        )
    return name


def to_query_parameters(parameters: Optional[Dict[str, Any]]) -> QueryParameters:
    """Convert ``{name: value}`` into ``[{'name': '@name', 'value': value}]``."""
    if not parameters:
        return []
    converted = []
    for name, value in parameters.items():
        name = str(name)
        converted.append({'name': name if name.startswith('@') else f'@{name}', 'value': value})
    return converted


def build_documents_query(limit: int,
                          filter_conditions: Optional[Dict[str, Any]] = None,
                          order_by: Optional[str] = None,
                          order_direction: str = 'ASC') -> Tuple[str, QueryParameters]:
    """Build a ``SELECT TOP`` query with equality filters and optional ordering.

    Args:
        limit: Maximum number of documents
        filter_conditions: Field path to required value
        order_by: Field path to sort on
        order_direction: ASC or DESC

    Returns:
        Tuple of (query text, parameter list)

    Raises:
        ValidationError: On a non-positive limit, an unsafe field name or an
            unknown sort direction
    """
    validate_positive_int(limit, 'limit')

    query = f'SELECT TOP {limit} * FROM c'
    parameters: QueryParameters = []

    if filter_conditions:
        clauses = []
        for index, (key, value) in enumerate(filter_conditions.items()):
            param_name = f'@param{index}'
            clauses.append(f'c.{validate_field_name(key)} = {param_name}')
            parameters.append({'name': param_name, 'value': value})
        query += ' WHERE ' + ' AND '.join(clauses)

    if order_by:
        direction = (order_direction or 'ASC').upper()
        if direction not in ORDER_DIRECTIONS:
            raise ValidationError(
                f"order_direction must be ASC or DESC, got '{order_direction}'",
                field_name='order_direction'
            )
        query += f' ORDER BY c.{validate_field_name(order_by, "order_by")} {direction}'

    return query, parameters
