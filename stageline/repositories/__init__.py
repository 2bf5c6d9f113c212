"""Repositories for definitions, instances and approvals."""

from .approvals import ApprovalRepository
from .instances import InstanceRepository
from .pipelines import PipelineRepository

__all__ = ["ApprovalRepository", "InstanceRepository", "PipelineRepository"]
