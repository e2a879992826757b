# -*- coding: utf-8 -*-
"""
Task descriptors: what a batch asks the model to do with each unit.

The engine is a single parametric pipeline; everything task specific lives
on a ``TaskDescriptor``: the prompts, model knobs, required options and the
uniqueness rule that limits concurrent jobs.

Prompt templates use ``str.format`` fields. ``{content}`` is the unit text;
every other field is looked up in the job's task options, then in its shared
context, and renders as an empty string when missing.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..errors import ValidationError


class _PromptValues(dict):
    def __missing__(self, key):
        return ""


@dataclass(frozen=True)
class TaskDescriptor:
    """
    Strategy object describing one kind of batch transformation.

    Attributes:
        name (str): Task identifier stored on jobs.
        system_message (str): System prompt of every request.
        prompt_template (str): User prompt template, see module docstring.
        model (str | None): Model override. None uses the configured model.
        max_tokens (int | None): Completion cap override.
        temperature (float | None): Temperature override.
        output_ratio (float | None): Expected output/input ratio override
            used by the cost estimate.
        required_options (tuple): Option names that must be present.
        allowed_values (dict): Option name -> allowed values.
        uniqueness_rule (callable | None): ``(collection_id, options) -> key``.
            At most one active job may hold a given key.
        single_completion (bool): If True, a key that already has a completed
            job cannot be submitted again.
    """
    name: str
    system_message: str
    prompt_template: str
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    output_ratio: Optional[float] = None
    required_options: tuple = ()
    allowed_values: Dict[str, tuple] = field(default_factory=dict)
    uniqueness_rule: Optional[Callable[[str, dict], Optional[str]]] = None
    single_completion: bool = False

    def validate_options(self, options: Optional[dict]) -> dict:
        """
        Check task options against the descriptor.

        Raises:
            ValidationError: If a required option is missing or a value is not allowed.
        """
        options = dict(options or {})
        missing = [name for name in self.required_options
                   if options.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Task '{self.name}' requires options: {', '.join(missing)}",
                task=self.name, missing=missing
            )
        for name, allowed in self.allowed_values.items():
            if name in options and options[name] not in allowed:
                raise ValidationError(
                    f"Invalid {name} '{options[name]}' for task '{self.name}'. "
                    f"Allowed values: {', '.join(allowed)}",
                    task=self.name
                )
        return options

    def render_prompt(self, content: str, options=None, shared_context=None) -> str:
        values = _PromptValues(shared_context or {})
        values.update(options or {})
        values['content'] = content
        values.setdefault('target_chars', int(len(content) * (self.output_ratio or 0.4)))
        return self.prompt_template.format_map(values)

    def shared_context_strings(self, options=None, shared_context=None) -> list:
        """Prompt text repeated in every request of a job (for cost estimates)."""
        return [self.system_message, self.render_prompt("", options, shared_context)]

    def uniqueness_key(self, collection_id, options=None) -> Optional[str]:
        if self.uniqueness_rule is None:
            return None
        return self.uniqueness_rule(collection_id, options or {})


#=======================================================================
# Built-in tasks
#=======================================================================

SUMMARY_SYSTEM_MESSAGE = (
    "You are an academic assistant for university students. "
    "Follow the instructions with absolute precision."
)

SUMMARY_PROMPT = """Act as an academic assistant preparing study material.

ACADEMIC CONTEXT:
- Faculty: {faculty}
- Subject: {subject}
- Target output: about {target_chars} characters (at most 40% of the input)

## GOAL
Write an in-depth, complete summary of the text below that can replace the
original for exam preparation.

## RULES
1. Do not exceed 40% of the length of the original text.
2. Rely EXCLUSIVELY on the text provided. Do not add external information.
3. Keep academic rigor and precise terminology.
4. Make every definition, theory, formula, date and acronym explicit.

TEXT:
{content}"""

ANALYSIS_SYSTEM_MESSAGE = (
    "You are an expert thesis supervisor. Conduct high quality academic "
    "analyses following the specialized instructions rigorously."
)

ANALYSIS_PROMPT = """Conduct a "{analysis_type}" analysis of the thesis material below.

CONTEXT:
- Thesis title: {title}
- Faculty: {faculty}
- Academic level: {level}

{instructions}

Report strengths, weaknesses and concrete recommendations.

MATERIAL:
{content}"""

ANALYSIS_TYPES = ('structural', 'methodological', 'content', 'bibliographic', 'argumentative')
ANALYSIS_LEVELS = ('bachelor', 'master', 'doctorate')

ANALYSIS_INSTRUCTIONS = {
    'structural': "Assess the logical organization: coherence, clarity, balance of sections and transitions.",
    'methodological': "Assess the method: appropriateness, description, application, limits and justification.",
    'content': "Assess the content: accuracy, completeness, depth, relevance and currency of sources.",
    'bibliographic': "Assess the sources: relevance, coverage, currency and citation consistency.",
    'argumentative': "Assess the argumentation: thesis clarity, evidence, counterarguments and conclusions.",
}


class AnalysisTaskDescriptor(TaskDescriptor):
    """Analysis task: injects type specific instructions into the prompt."""

    def render_prompt(self, content, options=None, shared_context=None):
        options = dict(options or {})
        options.setdefault('instructions', ANALYSIS_INSTRUCTIONS.get(options.get('analysis_type'), ""))
        return super().render_prompt(content, options, shared_context)


def analysis_uniqueness_rule(collection_id, options):
    return f"{collection_id}:{options['analysis_type']}"


SUMMARY_TASK = TaskDescriptor(
    name='summary',
    system_message=SUMMARY_SYSTEM_MESSAGE,
    prompt_template=SUMMARY_PROMPT,
)

ANALYSIS_TASK = AnalysisTaskDescriptor(
    name='analysis',
    system_message=ANALYSIS_SYSTEM_MESSAGE,
    prompt_template=ANALYSIS_PROMPT,
    required_options=('analysis_type',),
    allowed_values={'analysis_type': ANALYSIS_TYPES, 'level': ANALYSIS_LEVELS},
    uniqueness_rule=analysis_uniqueness_rule,
    single_completion=True,
)

TASKS: Dict[str, TaskDescriptor] = {
    SUMMARY_TASK.name: SUMMARY_TASK,
    ANALYSIS_TASK.name: ANALYSIS_TASK,
}


def register_task(descriptor: TaskDescriptor, replace: bool = False) -> TaskDescriptor:
    """Make a task descriptor available to submissions by name."""
    if descriptor.name in TASKS and not replace:
        raise ValueError(f"Task '{descriptor.name}' is already registered")
    TASKS[descriptor.name] = descriptor
    logging.debug(f"Registered task '{descriptor.name}'")
    return descriptor


def get_task(name) -> TaskDescriptor:
    """
    Look up a registered task.

    Raises:
        ValidationError: If no task has that name.
    """
    try:
        return TASKS[name]
    except KeyError:
        raise ValidationError(
            f"Unknown task '{name}'. Available tasks: {', '.join(sorted(TASKS))}"
        ) from None
