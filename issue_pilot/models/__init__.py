"""Core domain models for the orchestration engine.

This package defines the data models shared by every engine component:
workflow executions and their transition log, approval requests, worker
registrations, and the results passed between components.

Key Models:
    - WorkflowExecution: One workflow instance and its persisted state
    - PhaseTransition: Immutable audit record of a phase attempt
    - WorkflowError: Failure attached once automated recovery gave up
    - ApprovalRequest: Pending or resolved human decision
    - WorkerRegistration: Connected worker with roles and live metrics
    - Item / ChangeRef: Opaque platform references

Example:
    >>> from issue_pilot.models.domain import WorkflowExecution
    >>> execution = WorkflowExecution.new(item="42", resource="acme/widgets")
    >>> execution.current_phase
    <Phase.ITEM_SELECTION: 'item-selection'>
"""
