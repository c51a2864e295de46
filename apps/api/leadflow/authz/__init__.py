from leadflow.authz.models import RoleCapabilityOverride

__all__ = ["RoleCapabilityOverride"]
