from leadflow.experiments.models import ABExperiment, ExperimentAssignment
from leadflow.templates.models import PersonalizationRule, PersonalizedTemplate, TemplateVariant
from leadflow.workflows.models import (
    SequenceStep,
    WorkflowConfiguration,
    WorkflowEnrollment,
    WorkflowExecution,
)

__all__ = [
    "ABExperiment",
    "ExperimentAssignment",
    "PersonalizationRule",
    "PersonalizedTemplate",
    "SequenceStep",
    "TemplateVariant",
    "WorkflowConfiguration",
    "WorkflowEnrollment",
    "WorkflowExecution",
]
