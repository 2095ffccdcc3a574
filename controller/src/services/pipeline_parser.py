"""
Pipeline YAML parser and validator.

Turns a raw definition (YAML text or an already-loaded mapping) into a
validated, immutable PipelineDefinition. Failures always raise; a malformed
definition is never partially returned.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from controller.src.dsl.conditions import Condition, needs_references, parse_condition
from controller.src.errors import (
    CycleError,
    DuplicateJobError,
    ParseError,
    UnknownJobError,
)
from controller.src.models.definition import (
    ArtifactInput,
    ArtifactOutput,
    ConcurrencySpec,
    DispatchInput,
    EnvBinding,
    EnvironmentSpec,
    EventKind,
    JobSpec,
    PipelineDefinition,
    StepKind,
    StepSpec,
    TriggerRule,
)
from controller.src.services.graph import find_cycle

logger = logging.getLogger(__name__)

EVENT_ALIASES = {
    "push": EventKind.PUSH,
    "pull_request": EventKind.PULL_REQUEST,
    "schedule": EventKind.SCHEDULE,
    "manual": EventKind.MANUAL,
    "workflow_dispatch": EventKind.MANUAL,
    "release": EventKind.RELEASE,
}

PIPELINE_KEYS = {"name", "on", "jobs", "env", "environments"}
TRIGGER_KEYS = {"branches", "branches-ignore", "paths", "paths-ignore", "inputs"}
JOB_KEYS = {"steps", "needs", "if", "environment", "concurrency", "events", "continue-on-error", "env"}
COMMON_STEP_KEYS = {"name", "env", "timeout", "continue-on-error", "if"}
RUN_STEP_KEYS = COMMON_STEP_KEYS | {"run", "inputs", "outputs", "working-directory"}
USES_STEP_KEYS = COMMON_STEP_KEYS | {"uses", "with"}

# action name -> option name -> (type, required)
ACTIONS: Dict[str, Dict[str, Tuple[type, bool]]] = {
    "checkout": {"ref": (str, False), "depth": (int, False), "path": (str, False)},
    "upload-artifact": {"name": (str, True), "path": (str, True), "persist": (bool, False)},
    "download-artifact": {"name": (str, True), "path": (str, False)},
}

_SECRET_REF = re.compile(r"^\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}$")

def parse_pipeline_config(yaml_content: str) -> PipelineDefinition:
    """Parse pipeline YAML configuration from string."""
    try:
        root = yaml.compose(yaml_content, Loader=yaml.SafeLoader)
        if root is not None:
            _check_duplicate_keys(root, ())
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> PipelineDefinition:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def _check_duplicate_keys(node: yaml.Node, path: Tuple[str, ...]):
    if isinstance(node, yaml.MappingNode):
        seen = set()
        for key_node, value_node in node.value:
            key = key_node.value
            if key in seen:
                if path == ("jobs",):
                    raise DuplicateJobError(f"Duplicate job name '{key}'")
                location = ".".join(path) or "top level"
                raise ParseError(f"Duplicate key '{key}' at {location}")
            seen.add(key)
            _check_duplicate_keys(value_node, path + (str(key),))
    elif isinstance(node, yaml.SequenceNode):
        for item in node.value:
            _check_duplicate_keys(item, path + ("[]",))

def _warn_unknown(mapping: Dict[str, Any], known: set, where: str, warnings: List[str]):
    for key in mapping:
        if key not in known:
            message = f"Unknown key '{key}' in {where} is ignored"
            logger.warning(message)
            warnings.append(message)

def _as_list(value: Any, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ParseError(f"{what} must be a string or a list of strings")
    return list(value)

def validate_config(config: Optional[Dict[str, Any]]) -> PipelineDefinition:
    """Validate pipeline configuration structure."""
    if not config:
        raise ParseError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise ParseError("Pipeline configuration must be a dictionary")

    warnings: List[str] = []

    # YAML 1.1 reads a bare `on` key as boolean True
    if True in config:
        config = dict(config)
        config["on"] = config.pop(True)

    _warn_unknown(config, PIPELINE_KEYS, "pipeline", warnings)

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise ParseError("Pipeline 'name' must be a string")

    if "on" in config:
        triggers = parse_triggers(config["on"], warnings)
    else:
        message = "No 'on' triggers defined; defaulting to every push"
        logger.warning(message)
        warnings.append(message)
        triggers = [TriggerRule(event=EventKind.PUSH)]

    if "jobs" not in config:
        raise ParseError("Pipeline must have 'jobs' defined")

    jobs_config = config["jobs"]
    if not isinstance(jobs_config, dict):
        raise ParseError("Pipeline 'jobs' must be a mapping of job name to job")

    if len(jobs_config) == 0:
        raise ParseError("Pipeline must have at least one job")

    environments = parse_environments(config.get("environments"))

    jobs: Dict[str, JobSpec] = {}
    for job_name, job_config in jobs_config.items():
        if not isinstance(job_name, str):
            raise ParseError(f"Job name {job_name!r} must be a string")
        if job_name in jobs:
            raise DuplicateJobError(f"Duplicate job name '{job_name}'")
        jobs[job_name] = validate_job(job_name, job_config, warnings)

    validate_graph(jobs)

    try:
        return PipelineDefinition(
            name=name,
            triggers=triggers,
            jobs=jobs,
            environments=environments,
            env=parse_env(config.get("env"), "pipeline"),
            warnings=warnings,
        )
    except ValidationError as e:
        raise ParseError(f"Invalid pipeline: {e}")

def validate_graph(jobs: Dict[str, JobSpec]):
    """Check needs references, self-reference and cycles."""
    for job in jobs.values():
        for dep in job.needs:
            if dep == job.name:
                raise CycleError([job.name, job.name])
            if dep not in jobs:
                raise UnknownJobError(f"Job '{job.name}' needs unknown job '{dep}'")

    cycle = find_cycle({name: job.needs for name, job in jobs.items()})
    if cycle:
        raise CycleError(cycle)

def parse_triggers(on: Any, warnings: List[str]) -> List[TriggerRule]:
    """Parse the `on` section into an ordered list of trigger rules."""
    if isinstance(on, str):
        on = {on: None}
    elif isinstance(on, list):
        if not all(isinstance(e, str) for e in on):
            raise ParseError("'on' list entries must be event names")
        on = {e: None for e in on}
    elif not isinstance(on, dict):
        raise ParseError("'on' must be an event name, a list of event names, or a mapping")

    rules: List[TriggerRule] = []
    for event_name, filters in on.items():
        kind = EVENT_ALIASES.get(event_name)
        if kind is None:
            raise ParseError(f"Unsupported trigger event '{event_name}'")

        try:
            if kind == EventKind.SCHEDULE:
                rules.extend(parse_schedule(filters))
                continue

            if filters is None:
                filters = {}
            if not isinstance(filters, dict):
                raise ParseError(f"Trigger '{event_name}' filters must be a mapping")
            _warn_unknown(filters, TRIGGER_KEYS, f"trigger '{event_name}'", warnings)

            inputs = {}
            if "inputs" in filters:
                if kind != EventKind.MANUAL:
                    raise ParseError(f"Only manual triggers accept 'inputs', not '{event_name}'")
                inputs = parse_dispatch_inputs(filters["inputs"])

            rules.append(TriggerRule(
                event=kind,
                branches=_as_list(filters.get("branches"), f"'{event_name}.branches'"),
                branches_ignore=_as_list(filters.get("branches-ignore"), f"'{event_name}.branches-ignore'"),
                paths=_as_list(filters.get("paths"), f"'{event_name}.paths'"),
                paths_ignore=_as_list(filters.get("paths-ignore"), f"'{event_name}.paths-ignore'"),
                inputs=inputs,
            ))
        except ValidationError as e:
            raise ParseError(f"Invalid trigger '{event_name}': {e}")

    return rules

def parse_schedule(value: Any) -> List[TriggerRule]:
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list) or not value:
        raise ParseError("'schedule' must be a non-empty list of cron entries")

    rules = []
    for entry in value:
        cron = entry.get("cron") if isinstance(entry, dict) else entry
        if not isinstance(cron, str):
            raise ParseError("Each schedule entry must define a 'cron' string")
        rules.append(TriggerRule(event=EventKind.SCHEDULE, cron=cron))
    return rules

def parse_dispatch_inputs(value: Any) -> Dict[str, DispatchInput]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError("Manual trigger 'inputs' must be a mapping")
    inputs = {}
    for name, spec in value.items():
        spec = spec or {}
        if not isinstance(spec, dict):
            raise ParseError(f"Input '{name}' must be a mapping")
        default = spec.get("default")
        inputs[name] = DispatchInput(
            name=name,
            description=str(spec.get("description", "")),
            required=bool(spec.get("required", False)),
            default=None if default is None else _stringify(default),
        )
    return inputs

def parse_environments(value: Any) -> Dict[str, EnvironmentSpec]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError("'environments' must be a mapping")
    environments = {}
    for name, spec in value.items():
        spec = spec or {}
        if not isinstance(spec, dict):
            raise ParseError(f"Environment '{name}' must be a mapping")
        approvals = spec.get("required-approvals")
        if approvals is not None and (not isinstance(approvals, int) or approvals < 0):
            raise ParseError(f"Environment '{name}' required-approvals must be a non-negative integer")
        timeout = spec.get("timeout")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ParseError(f"Environment '{name}' timeout must be a positive number")
        environments[name] = EnvironmentSpec(name=name, required_approvals=approvals, timeout=timeout)
    return environments

def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

def parse_env(value: Any, where: str) -> List[EnvBinding]:
    """Parse an `env` mapping into literal and secret bindings."""
    if value is None:
        return []
    if not isinstance(value, dict):
        raise ParseError(f"'env' in {where} must be a mapping")

    bindings = []
    for key, raw in value.items():
        if isinstance(raw, dict):
            if set(raw) != {"secret"} or not isinstance(raw["secret"], str):
                raise ParseError(f"env '{key}' in {where} must be a literal or {{secret: NAME}}")
            bindings.append(EnvBinding(name=key, secret=raw["secret"]))
            continue
        if isinstance(raw, (str, int, float, bool)):
            text = _stringify(raw)
            match = _SECRET_REF.match(text.strip())
            if match:
                bindings.append(EnvBinding(name=key, secret=match.group(1)))
            elif "secrets." in text and "${{" in text:
                raise ParseError(f"env '{key}' in {where} must reference a secret on its own")
            else:
                bindings.append(EnvBinding(name=key, value=text))
            continue
        raise ParseError(f"env '{key}' in {where} must be a string, number or boolean")
    return bindings

def validate_job(job_name: str, job: Any, warnings: List[str]) -> JobSpec:
    """Validate a single job."""
    if not isinstance(job, dict):
        raise ParseError(f"Job '{job_name}' must be a dictionary")

    _warn_unknown(job, JOB_KEYS, f"job '{job_name}'", warnings)

    if "steps" not in job:
        raise ParseError(f"Job '{job_name}' missing 'steps'")

    steps = job["steps"]
    if not isinstance(steps, list) or len(steps) == 0:
        raise ParseError(f"Job '{job_name}' 'steps' must be a non-empty list")

    needs = _as_list(job.get("needs"), f"Job '{job_name}' 'needs'")
    if len(set(needs)) != len(needs):
        raise ParseError(f"Job '{job_name}' lists a dependency more than once")

    condition = None
    if "if" in job:
        condition = parse_condition(job["if"])
        for ref in needs_references(condition):
            if ref not in needs:
                raise ParseError(f"Job '{job_name}' condition references needs.{ref} but does not need it")

    environment = job.get("environment")
    if isinstance(environment, dict):
        environment = environment.get("name")
    if environment is not None and not isinstance(environment, str):
        raise ParseError(f"Job '{job_name}' 'environment' must be a name")

    events = None
    if "events" in job:
        events = []
        for event_name in _as_list(job["events"], f"Job '{job_name}' 'events'"):
            kind = EVENT_ALIASES.get(event_name)
            if kind is None:
                raise ParseError(f"Job '{job_name}' scoped to unsupported event '{event_name}'")
            events.append(kind)

    validated_steps = [validate_step(job_name, step, i, warnings) for i, step in enumerate(steps)]
    seen = set()
    for step in validated_steps:
        if step.name in seen:
            message = f"Job '{job_name}' has more than one step named '{step.name}'"
            logger.warning(message)
            warnings.append(message)
        seen.add(step.name)

    try:
        return JobSpec(
            name=job_name,
            steps=validated_steps,
            needs=needs,
            condition=condition,
            environment=environment,
            concurrency=parse_concurrency(job_name, job.get("concurrency")),
            events=events,
            continue_on_error=_flag(job, "continue-on-error", f"Job '{job_name}'"),
            env=parse_env(job.get("env"), f"job '{job_name}'"),
        )
    except ValidationError as e:
        raise ParseError(f"Invalid job '{job_name}': {e}")

def parse_concurrency(job_name: str, value: Any) -> Optional[ConcurrencySpec]:
    if value is None:
        return None
    if isinstance(value, str):
        return ConcurrencySpec(group=value)
    if isinstance(value, dict) and isinstance(value.get("group"), str):
        cancel = value.get("cancel-in-progress", False)
        if not isinstance(cancel, bool):
            raise ParseError(f"Job '{job_name}' cancel-in-progress must be true or false")
        return ConcurrencySpec(group=value["group"], cancel_in_progress=cancel)
    raise ParseError(f"Job '{job_name}' 'concurrency' must be a group name or {{group, cancel-in-progress}}")

def _flag(config: Dict[str, Any], key: str, where: str) -> bool:
    value = config.get(key, False)
    if not isinstance(value, bool):
        raise ParseError(f"{where} '{key}' must be true or false")
    return value

def _normalize_action(uses: str) -> str:
    # `actions/checkout@v4` and `checkout` name the same action
    return uses.split("@", 1)[0].rsplit("/", 1)[-1]

def validate_step(job_name: str, step: Any, index: int, warnings: List[str]) -> StepSpec:
    """Validate a single pipeline step."""
    where = f"Job '{job_name}' step {index}"
    if not isinstance(step, dict):
        raise ParseError(f"{where} must be a dictionary")

    has_run, has_uses = "run" in step, "uses" in step
    if has_run == has_uses:
        raise ParseError(f"{where} must define exactly one of 'run' or 'uses'")

    if "name" in step and not isinstance(step["name"], str):
        raise ParseError(f"{where} 'name' must be a string")

    timeout = step.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0):
        raise ParseError(f"{where} 'timeout' must be a positive number of seconds")

    condition: Optional[Condition] = None
    if "if" in step:
        condition = parse_condition(step["if"])
        if needs_references(condition):
            raise ParseError(f"{where} condition cannot reference needs")

    common = {
        "env": parse_env(step.get("env"), where),
        "timeout": timeout,
        "continue_on_error": _flag(step, "continue-on-error", where),
        "condition": condition,
    }

    try:
        if has_run:
            _warn_unknown(step, RUN_STEP_KEYS, where, warnings)
            command = step["run"]
            if not isinstance(command, str) or not command.strip():
                raise ParseError(f"{where} 'run' must be a non-empty string")
            working_directory = step.get("working-directory")
            if working_directory is not None and not isinstance(working_directory, str):
                raise ParseError(f"{where} 'working-directory' must be a string")
            return StepSpec(
                name=step.get("name") or command.strip().splitlines()[0][:60],
                kind=StepKind.RUN,
                run=command,
                inputs=parse_artifact_inputs(step.get("inputs"), where),
                outputs=parse_artifact_outputs(step.get("outputs"), where),
                working_directory=working_directory,
                **common,
            )

        _warn_unknown(step, USES_STEP_KEYS, where, warnings)
        uses = step["uses"]
        if not isinstance(uses, str):
            raise ParseError(f"{where} 'uses' must be a string")
        action = _normalize_action(uses)
        options = validate_action_options(action, step.get("with"), where, warnings)

        inputs, outputs = [], []
        if action == "upload-artifact":
            outputs = [ArtifactOutput(
                name=options["name"], path=options["path"], persist=options.get("persist", False)
            )]
        elif action == "download-artifact":
            inputs = [ArtifactInput(name=options["name"], path=options.get("path"))]

        return StepSpec(
            name=step.get("name") or uses,
            kind=StepKind.USES,
            uses=action,
            options=options,
            inputs=inputs,
            outputs=outputs,
            **common,
        )
    except ValidationError as e:
        raise ParseError(f"Invalid {where}: {e}")

def validate_action_options(action: str, options: Any, where: str, warnings: List[str]) -> Dict[str, Any]:
    """Check `with:` options against the action's closed option set."""
    if action not in ACTIONS:
        raise ParseError(f"{where} uses unknown action '{action}'; known actions: {', '.join(sorted(ACTIONS))}")
    options = options or {}
    if not isinstance(options, dict):
        raise ParseError(f"{where} 'with' must be a mapping")

    spec = ACTIONS[action]
    _warn_unknown(options, set(spec), f"{where} 'with'", warnings)

    validated = {}
    for option, (kind, required) in spec.items():
        if option not in options:
            if required:
                raise ParseError(f"{where} action '{action}' requires option '{option}'")
            continue
        value = options[option]
        if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
            raise ParseError(f"{where} option '{option}' must be of type {kind.__name__}")
        validated[option] = value
    return validated

def parse_artifact_inputs(value: Any, where: str) -> List[ArtifactInput]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ParseError(f"{where} 'inputs' must be a list of artifact names")
    inputs = []
    for entry in value:
        if isinstance(entry, str):
            inputs.append(ArtifactInput(name=entry))
        elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
            inputs.append(ArtifactInput(name=entry["name"], path=entry.get("path")))
        else:
            raise ParseError(f"{where} 'inputs' entries must be names or {{name, path}}")
    return inputs

def parse_artifact_outputs(value: Any, where: str) -> List[ArtifactOutput]:
    if value is None:
        return []
    if not isinstance(value, dict):
        raise ParseError(f"{where} 'outputs' must map artifact names to paths")
    outputs = []
    for name, spec in value.items():
        if isinstance(spec, str):
            outputs.append(ArtifactOutput(name=name, path=spec))
        elif isinstance(spec, dict) and isinstance(spec.get("path"), str):
            outputs.append(ArtifactOutput(
                name=name, path=spec["path"], persist=bool(spec.get("persist", False))
            ))
        else:
            raise ParseError(f"{where} output '{name}' must be a path or {{path, persist}}")
    return outputs
