"""XFS project quota: ID pool, persisted state and the xfs_quota adapter."""

from rootfs_quota.xfs.project_pool import ProjectIDPool
from rootfs_quota.xfs.quota import QuotaEnforcer, XfsQuotaEnforcer, check_project_quota_mount
from rootfs_quota.xfs.quota_mock import MockQuotaEnforcer
from rootfs_quota.xfs.state import StateStore

__all__ = [
    "ProjectIDPool",
    "StateStore",
    "QuotaEnforcer",
    "XfsQuotaEnforcer",
    "MockQuotaEnforcer",
    "check_project_quota_mount",
]
