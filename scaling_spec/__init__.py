"""
Policy file models for Telescaler.
"""

from .models import (
    PolicyFile, PolicyFileKind, PolicySpec, AlertRuleSpec, ServiceSpec, ResourceRequirements,
    validate_policy_spec, validate_policy_file, load_policy_file, get_example_policies
)

__all__ = [
    'PolicyFile', 'PolicyFileKind', 'PolicySpec', 'AlertRuleSpec', 'ServiceSpec', 'ResourceRequirements',
    'validate_policy_spec', 'validate_policy_file', 'load_policy_file', 'get_example_policies'
]
