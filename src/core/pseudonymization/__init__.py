"""
Pseudonymization of canonical events before they reach the warehouse.
"""

from .field_policy import FieldPolicy, FieldPolicyLoader
from .transformer import PseudonymizationTransformer

__all__ = [
    "PseudonymizationTransformer",
    "FieldPolicy",
    "FieldPolicyLoader",
]
