import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from lims_import.api.schemas.imports import MappingConfig
from lims_import.core.exceptions import MappingError, TemplateNotFound
from lims_import.db.models import ImportTemplate
from lims_import.domain.imports.transform import coerce_mapping_config

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2


def create_template(
    db: Session,
    name: str,
    mapping_config: Union[MappingConfig, Dict[str, Any]],
    user_id: str,
    description: Optional[str] = None,
    source_system: Optional[str] = None,
    is_public: bool = False,
) -> ImportTemplate:
    """Persist a named mapping configuration for reuse."""
    name = (name or "").strip()
    if len(name) < MIN_NAME_LENGTH:
        raise MappingError(f"Template name must have at least {MIN_NAME_LENGTH} characters", fields=["name"])

    config = coerce_mapping_config(mapping_config)
    template = ImportTemplate(
        name=name,
        description=description,
        source_system=source_system or config.source_system,
        is_public=is_public,
        created_by=user_id,
        mapping_config=config.model_dump(mode="json"),
    )
    db.add(template)
    db.commit()
    logger.info("Created import template %s (%s) for user %s", template.id, name, user_id)
    return template


def list_templates(db: Session, user_id: str) -> List[ImportTemplate]:
    """The user's own templates plus every public one, newest first."""
    query = (
        select(ImportTemplate)
        .where(or_(ImportTemplate.created_by == user_id, ImportTemplate.is_public.is_(True)))
        .order_by(ImportTemplate.created_at.desc())
    )
    return list(db.execute(query).scalars().all())


def get_template(db: Session, template_id: str, user_id: str) -> ImportTemplate:
    template = db.get(ImportTemplate, template_id)
    # Private templates of other users are reported as missing
    if template is None or (not template.is_public and template.created_by != user_id):
        raise TemplateNotFound(template_id)
    return template


def template_mapping_config(template: ImportTemplate) -> MappingConfig:
    """Rebuild the stored binding set as a MappingConfig."""
    return coerce_mapping_config(template.mapping_config)
