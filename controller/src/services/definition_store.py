"""
Pipeline YAML parser, validator and per-repository definition registry.
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from controller.src.branch_matcher import ANY_BRANCH, BranchFilter
from controller.src.config import get_settings
from controller.src.errors import ParseError, ValidationError
from controller.src.models.pipeline import (
    EventType,
    JobDefinition,
    PipelineDefinition,
    StepDefinition,
)

logger = logging.getLogger(__name__)

DEFINITION_FILENAMES = (".kiln.yml", ".kiln.yaml", "kiln.yml", "kiln.yaml")

# Step keys that name an action instead of a shell command
UNSUPPORTED_STEP_KINDS = ("uses", "action", "script", "template")

RawDefinition = Union[str, bytes, Mapping[str, Any], PipelineDefinition]

def parse_pipeline_config(yaml_content: Union[str, bytes], default_timeout: Optional[int] = None) -> PipelineDefinition:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}")

    return parse_pipeline_dict(config, default_timeout)

def parse_pipeline_dict(config: Any, default_timeout: Optional[int] = None) -> PipelineDefinition:
    """Validate pipeline configuration from dict."""
    if config is None or config == "":
        raise ParseError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise ParseError("Pipeline configuration must be a mapping")

    if default_timeout is None:
        default_timeout = get_settings().job_timeout

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise ParseError("Pipeline 'name' must be a string")

    env = _parse_env(config.get("env"), "Pipeline")

    # YAML 1.1 reads a bare `on` key as boolean True
    raw_triggers = config["on"] if "on" in config else config.get(True)
    triggers = _parse_triggers(raw_triggers)

    if "jobs" in config:
        raw_jobs = _job_items(config["jobs"])
    elif "steps" in config:
        # Single-job shorthand
        raw_jobs = [("default", {"name": name, "steps": config["steps"]})]
    else:
        raise ValidationError("Pipeline must have 'jobs' defined")

    if not raw_jobs:
        raise ValidationError("Pipeline must have at least one job")

    jobs = [_parse_job(job_id, raw, default_timeout) for job_id, raw in raw_jobs]
    _check_dependencies(jobs)

    return PipelineDefinition(
        name=name,
        jobs=tuple(jobs),
        env=env,
        triggers=triggers,
    )

def _job_items(raw_jobs: Any) -> List[Tuple[str, Any]]:
    if isinstance(raw_jobs, dict):
        return [(str(job_id), raw) for job_id, raw in raw_jobs.items()]

    if isinstance(raw_jobs, list):
        items = []
        for i, raw in enumerate(raw_jobs):
            if not isinstance(raw, dict):
                raise ParseError(f"Job {i} must be a mapping")
            if not isinstance(raw.get("name"), str):
                raise ParseError(f"Job {i} missing 'name'")
            items.append((raw["name"], raw))
        return items

    if raw_jobs is None:
        return []

    raise ParseError("Pipeline 'jobs' must be a mapping or a list")

def _parse_job(job_id: str, raw: Any, default_timeout: int) -> JobDefinition:
    if not isinstance(raw, dict):
        raise ParseError(f"Job '{job_id}' must be a mapping")

    name = raw.get("name", job_id)
    if not isinstance(name, str):
        raise ParseError(f"Job '{job_id}' 'name' must be a string")

    steps = raw.get("steps")
    if steps is None or steps == []:
        raise ValidationError(f"Job '{job_id}' must have at least one step")
    if not isinstance(steps, list):
        raise ParseError(f"Job '{job_id}' 'steps' must be a list")

    needs = raw.get("needs", [])
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list) or not all(isinstance(n, str) for n in needs):
        raise ParseError(f"Job '{job_id}' 'needs' must be a list of job names")

    branches = raw.get("branches")
    if branches is None:
        branch_filter = ANY_BRANCH
    else:
        branch_filter = _parse_branches(branches, f"Job '{job_id}'")

    image = raw.get("image")
    if image is not None and not isinstance(image, str):
        raise ParseError(f"Job '{job_id}' 'image' must be a string")

    return JobDefinition(
        id=job_id,
        name=name,
        steps=tuple(validate_step(step, i, job_id) for i, step in enumerate(steps)),
        timeout=_parse_job_timeout(raw, job_id, default_timeout),
        env=_parse_env(raw.get("env"), f"Job '{job_id}'"),
        needs=tuple(needs),
        branches=branch_filter,
        image=image,
    )

def validate_step(step: Any, index: int, job_id: str = "default") -> StepDefinition:
    """Validate a single pipeline step."""
    where = f"Job '{job_id}' step {index}"
    if not isinstance(step, dict):
        raise ParseError(f"{where} must be a mapping")

    for kind in UNSUPPORTED_STEP_KINDS:
        if kind in step:
            raise ValidationError(f"{where} has unknown step type '{kind}'")

    has_run = "run" in step
    has_commands = "commands" in step
    if has_run == has_commands:
        raise ValidationError(f"{where} must define exactly one of 'run' or 'commands'")

    if has_run:
        if not isinstance(step["run"], str) or not step["run"].strip():
            raise ParseError(f"{where} 'run' must be a non-empty string")
        command = step["run"]
        if "\n" in command.strip():
            # Multi-line scripts stop at the first failing line
            command = "set -e\n" + command
    else:
        commands = step["commands"]
        if not isinstance(commands, list) or not commands:
            raise ParseError(f"{where} 'commands' must be a non-empty list")
        for j, cmd in enumerate(commands):
            if not isinstance(cmd, str):
                raise ParseError(f"{where} command {j} must be a string")
        # Join commands with && so it fails fast on error
        command = " && ".join(commands)

    name = step.get("name", f"step-{index}")
    if not isinstance(name, str):
        raise ParseError(f"{where} 'name' must be a string")

    image = step.get("image")
    if image is not None and not isinstance(image, str):
        raise ParseError(f"{where} 'image' must be a string")

    timeout = step.get("timeout")
    if timeout is not None:
        timeout = _positive_number(timeout, f"{where} 'timeout'")

    return StepDefinition(
        name=name,
        command=command,
        timeout=timeout,
        env=_parse_env(step.get("env"), where),
        image=image,
    )

def _parse_job_timeout(raw: Dict[str, Any], job_id: str, default_timeout: int) -> float:
    if "timeout-minutes" in raw:
        return _positive_number(raw["timeout-minutes"], f"Job '{job_id}' 'timeout-minutes'") * 60
    if "timeout" in raw:
        return _positive_number(raw["timeout"], f"Job '{job_id}' 'timeout'")
    return float(default_timeout)

def _positive_number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"{what} must be a number")
    if value <= 0:
        raise ValidationError(f"{what} must be positive")
    return float(value)

def _parse_env(env: Any, where: str) -> Dict[str, str]:
    if env is None:
        return {}
    if not isinstance(env, dict):
        raise ParseError(f"{where} 'env' must be a mapping")
    parsed = {}
    for key, value in env.items():
        if not isinstance(key, str):
            raise ParseError(f"{where} env keys must be strings")
        if isinstance(value, bool):
            value = "true" if value else "false"
        if not isinstance(value, (str, int, float)):
            raise ParseError(f"{where} env '{key}' must be a scalar")
        parsed[key] = str(value)
    return parsed

def _parse_branches(patterns: Any, where: str) -> BranchFilter:
    if isinstance(patterns, str):
        patterns = [patterns]
    if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
        raise ParseError(f"{where} branches must be a list of patterns")
    try:
        return BranchFilter.from_patterns(patterns)
    except ValueError as e:
        raise ValidationError(f"{where} has an invalid branch pattern: {e}")

def _parse_triggers(raw: Any) -> Optional[Dict[EventType, BranchFilter]]:
    if raw is None:
        return None

    if isinstance(raw, str):
        raw = [raw]
    if isinstance(raw, list):
        raw = {event: None for event in raw}
    if not isinstance(raw, dict):
        raise ParseError("Pipeline 'on' must be a string, list or mapping")

    triggers = {}
    for event_name, spec in raw.items():
        try:
            event_type = EventType(event_name)
        except ValueError:
            raise ValidationError(f"Unknown trigger event '{event_name}'")

        if spec is None:
            triggers[event_type] = ANY_BRANCH
            continue
        if not isinstance(spec, dict):
            raise ParseError(f"Trigger '{event_name}' must be a mapping")

        where = f"Trigger '{event_name}'"
        include = _parse_branches(spec.get("branches", []), where)
        ignore = _parse_branches(spec.get("branches-ignore", []), where)
        triggers[event_type] = BranchFilter(
            include.include,
            include.exclude + ignore.include,
        )

    return triggers

def _check_dependencies(jobs: List[JobDefinition]):
    """Reject duplicate ids, unknown needs and dependency cycles."""
    ids = [job.id for job in jobs]
    seen = set()
    for job_id in ids:
        if job_id in seen:
            raise ValidationError(f"Duplicate job '{job_id}'")
        seen.add(job_id)

    graph = {job.id: job.needs for job in jobs}
    for job in jobs:
        for need in job.needs:
            if need not in graph:
                raise ValidationError(f"Job '{job.id}' needs unknown job '{need}'")

    visiting, done = set(), set()

    def visit(job_id: str, path: List[str]):
        if job_id in done:
            return
        if job_id in visiting:
            cycle = " -> ".join(path[path.index(job_id):] + [job_id])
            raise ValidationError(f"Dependency cycle: {cycle}")
        visiting.add(job_id)
        for need in graph[job_id]:
            visit(need, path + [job_id])
        visiting.discard(job_id)
        done.add(job_id)

    for job_id in ids:
        visit(job_id, [])

def find_definition(repo_path: str) -> Optional[str]:
    """Return the path of the pipeline file in a checkout, if any."""
    for filename in DEFINITION_FILENAMES:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            return config_path
    return None

class DefinitionStore:
    """Loads definitions and keeps the current one per repository."""

    def __init__(self, default_timeout: Optional[int] = None):
        self.default_timeout = default_timeout or get_settings().job_timeout
        self._definitions: Dict[str, PipelineDefinition] = {}

    def load(self, raw: RawDefinition) -> PipelineDefinition:
        if isinstance(raw, PipelineDefinition):
            return raw
        if isinstance(raw, (str, bytes)):
            return parse_pipeline_config(raw, self.default_timeout)
        return parse_pipeline_dict(raw, self.default_timeout)

    def load_path(self, path: str) -> PipelineDefinition:
        if os.path.isdir(path):
            found = find_definition(path)
            if found is None:
                raise ParseError(f"No pipeline definition found in {path}")
            path = found
        try:
            with open(path, "r") as f:
                content = f.read()
        except OSError as e:
            raise ParseError(f"Cannot read {path}: {e}")
        return self.load(content)

    def register(self, repository: str, raw: RawDefinition) -> PipelineDefinition:
        definition = self.load(raw)
        self._definitions[repository] = definition
        logger.info(
            f"Registered pipeline '{definition.name}' for {repository} "
            f"({len(definition.jobs)} jobs)"
        )
        return definition

    def get(self, repository: str) -> Optional[PipelineDefinition]:
        return self._definitions.get(repository)

    def remove(self, repository: str) -> bool:
        return self._definitions.pop(repository, None) is not None

    def repositories(self) -> List[str]:
        return sorted(self._definitions)
