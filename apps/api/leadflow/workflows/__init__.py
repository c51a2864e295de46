from leadflow.workflows.deletion_requests import DeletionRequestWorkflow, deletion_request_workflow
from leadflow.workflows.finalization import FinalizationWorkflow, finalization_workflow

__all__ = [
    "DeletionRequestWorkflow",
    "FinalizationWorkflow",
    "deletion_request_workflow",
    "finalization_workflow",
]
