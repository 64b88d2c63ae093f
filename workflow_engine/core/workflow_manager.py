"""Workflow Manager for authored, versioned workflow definitions."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import WorkflowDefinition, WorkflowSummary, ValidationResult
from ..storage.database import session_scope
from ..storage.models import WorkflowModel
from .exceptions import DefinitionError, StorageError, WorkflowNotFoundError, WorkflowEngineError
from .graph_store import parse_definition
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions: validation, storage and versioning."""

    def create_workflow(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> str:
        """
        Validate and store a new workflow definition.

        Args:
            definition: The workflow definition to store

        Returns:
            str: Unique workflow identifier

        Raises:
            DefinitionError: If validation fails or the name is taken
            StorageError: If storage operation fails
        """
        definition = parse_definition(definition)
        logger.info(f"Creating new workflow: {definition.name}")

        validation_result = self.validate_workflow(definition)
        if validation_result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(validation_result.warnings)}")

        workflow_id = str(uuid.uuid4())

        try:
            with session_scope() as db:
                existing = db.scalars(
                    select(WorkflowModel).where(WorkflowModel.name == definition.name)
                ).first()
                if existing:
                    raise DefinitionError(
                        f"Workflow with name '{definition.name}' already exists",
                        workflow_name=definition.name
                    )

                db.add(WorkflowModel(
                    id=workflow_id,
                    name=definition.name,
                    description=definition.description,
                    version=1,
                    definition=definition.model_dump(),
                    created_at=datetime.utcnow()
                ))

            logger.info(f"Successfully created workflow '{definition.name}' with ID: {workflow_id}")
            return workflow_id

        except WorkflowEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create_workflow")

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Retrieve the current version of a workflow definition.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            StorageError: If storage operation fails
        """
        definition, _ = self.get_workflow_record(workflow_id)
        return definition

    def get_workflow_record(self, workflow_id: str) -> Tuple[WorkflowDefinition, int]:
        """Retrieve a workflow definition together with its current version number."""
        logger.debug(f"Retrieving workflow with ID: {workflow_id}")

        try:
            with session_scope() as db:
                model = db.get(WorkflowModel, workflow_id)
                if model is None:
                    raise WorkflowNotFoundError(workflow_id)
                return WorkflowDefinition.model_validate(model.definition), model.version

        except WorkflowEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_workflow")

    def update_workflow(self, workflow_id: str, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> int:
        """
        Replace a workflow's definition and bump its version.

        Runs created from earlier versions are unaffected: each run owns a copy.

        Returns:
            int: The new version number
        """
        definition = parse_definition(definition)

        try:
            with session_scope() as db:
                model = db.get(WorkflowModel, workflow_id)
                if model is None:
                    raise WorkflowNotFoundError(workflow_id)

                model.name = definition.name
                model.description = definition.description
                model.definition = definition.model_dump()
                model.version = (model.version or 0) + 1
                model.updated_at = datetime.utcnow()
                version = model.version

            logger.info(f"Updated workflow {workflow_id} to version {version}")
            return version

        except WorkflowEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while updating workflow: {str(e)}")
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="update_workflow")

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        """Validate a workflow definition for structural correctness."""
        result = definition.validate_structure()
        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result

    def list_workflows(self) -> List[WorkflowSummary]:
        """List all stored workflows with summary information."""
        try:
            with session_scope() as db:
                models = db.scalars(select(WorkflowModel).order_by(WorkflowModel.created_at.desc())).all()
                return [
                    WorkflowSummary(
                        id=model.id,
                        name=model.name,
                        description=model.description or "",
                        version=model.version,
                        created_at=model.created_at,
                        node_count=len(model.definition.get('nodes', []))
                    )
                    for model in models
                ]

        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows")

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow by its ID.

        Returns:
            bool: True if the workflow was deleted, False if not found
        """
        logger.info(f"Deleting workflow with ID: {workflow_id}")

        try:
            with session_scope() as db:
                model = db.get(WorkflowModel, workflow_id)
                if model is None:
                    logger.warning(f"Workflow with ID '{workflow_id}' not found for deletion")
                    return False
                db.delete(model)

            logger.info(f"Successfully deleted workflow with ID: {workflow_id}")
            return True

        except SQLAlchemyError as e:
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete_workflow")
