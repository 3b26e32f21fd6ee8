"""
Change stream pipeline checks.

Pipelines are evaluated by the server: the change stream pipeline is passed
to ``watch()`` and, for copy-existing, appended to the aggregation that
builds the snapshot envelopes. Only the stage list itself is checked here so
that a stage change streams refuse fails at configuration time instead of
on the first open.
"""

from typing import Any, Dict, List, Optional

from .errors import ConfigurationError

# Stages MongoDB accepts in a change stream pipeline
SUPPORTED_STAGES = {
    "$match", "$project", "$addFields", "$set", "$unset", "$replaceRoot", "$replaceWith", "$redact"
}


def validate_pipeline(stages: Optional[List[Dict[str, Any]]], name: str = "pipeline") -> List[Dict[str, Any]]:
    """
    Check the shape of a change stream pipeline.

    Args:
        stages: Aggregation stages, or None for no pipeline
        name: Option name used in error messages

    Returns:
        The stages (empty list for None)

    Raises:
        ConfigurationError: If the pipeline is not a list of single-stage
            documents or uses a stage change streams do not support
    """
    if stages is None:
        return []
    if not isinstance(stages, list):
        raise ConfigurationError(f"{name} must be a list of stages")

    for stage in stages:
        if not isinstance(stage, dict) or len(stage) != 1:
            raise ConfigurationError(f"Each {name} stage must be a single-key document: {stage!r}")
        stage_name, body = next(iter(stage.items()))
        if stage_name not in SUPPORTED_STAGES:
            raise ConfigurationError(
                f"Unsupported pipeline stage {stage_name}; allowed: {sorted(SUPPORTED_STAGES)}"
            )
        if stage_name in ("$match", "$project", "$addFields", "$set", "$replaceRoot") and not isinstance(body, dict):
            raise ConfigurationError(f"{stage_name} takes a document")
        if stage_name == "$replaceRoot" and "newRoot" not in body:
            raise ConfigurationError("$replaceRoot requires newRoot")
        if stage_name == "$unset":
            paths = [body] if isinstance(body, str) else body
            if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
                raise ConfigurationError("$unset takes a field path or a list of field paths")
    return stages
