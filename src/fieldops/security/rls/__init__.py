from fieldops.security.rls.filters import RLSFilter, build_rls_filter
from fieldops.security.rls.policies import (
    RLSPolicyResolver,
    policy_allows_access,
    supported_policies,
)

__all__ = [
    "RLSFilter",
    "RLSPolicyResolver",
    "build_rls_filter",
    "policy_allows_access",
    "supported_policies",
]
