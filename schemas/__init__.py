"""
Pydantic schemas for read requests.

Schemas:
    requests: FilterRequest, Association, OrderByRequest and field filters

Usage:
    from schemas.requests import FilterRequest, Association, FieldFilter

Example:
    request = FilterRequest(
        filter_model=Team(name="pops"),
        associations=[Association(name="players", order_by=[OrderByRequest(field="name")])],
    )
"""

__all__ = [
    "FilterRequest",
    "Association",
    "OrderByRequest",
    "FieldFilter",
    "AndFilterGroup",
    "OrFilterGroup",
]
