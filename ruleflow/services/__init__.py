"""
Service layer for the RuleFlow automation backend.

This package contains the capability gate, the rule store, trigger
evaluation, the scheduler and action dispatch.
"""
