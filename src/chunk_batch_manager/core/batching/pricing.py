# -*- coding: utf-8 -*-
"""
Token and cost estimation for batch submissions.

Everything here is pure and deterministic: no store access and no network.
Note that the 'exact' mode needs the tiktoken encoding files, which tiktoken
downloads and caches on first use.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, Optional, Sequence

import tiktoken

from ..utils.misc import resolve_n_jobs


MODEL2PRICE = {
    # Standard (non-batch) pricing in USD per 1M tokens. Batch and provider
    # discounts are applied on top by estimate_batch_cost().
    'gpt-4.1'                                       : {'input': 2,     'output': 8   },
    'gpt-4.1-mini'                                  : {'input': 0.4,   'output': 1.6 },
    'gpt-4.1-nano'                                  : {'input': 0.1,   'output': 0.4 },
    'gpt-4o'                                        : {'input': 2.5,   'output': 10  },
    'gpt-4o-mini'                                   : {'input': 0.15,  'output': 0.6 },
    'o3'                                            : {'input': 2,     'output': 8   },
    'o3-mini'                                       : {'input': 1.1,   'output': 4.4 },
    'o4-mini'                                       : {'input': 1.1,   'output': 4.4 },
    'gpt-3.5-turbo'                                 : {'input': 0.5,   'output': 1.5 },
    'meta-llama/llama-4-maverick-17b-128e-instruct' : {'input': 0.2,   'output': 0.6 },
    'meta-llama/llama-4-scout-17b-16e-instruct'     : {'input': 0.11,  'output': 0.34},
    'llama-3.3-70b-versatile'                       : {'input': 0.59,  'output': 0.79},
    'llama-3.1-8b-instant'                          : {'input': 0.05,  'output': 0.08},
}

DEFAULT_CHARS_PER_TOKEN = 3.8
DEFAULT_OUTPUT_RATIO = 0.4
DEFAULT_MAX_OUTPUT_TOKENS = 4000


@dataclass
class CostEstimate:
    """Token and cost estimate for a batch of units."""
    model: str
    n_units: int
    input_tokens: int
    output_tokens: int
    raw_input_cost: float
    raw_output_cost: float
    raw_cost: float
    multiplier: float
    discounted_cost: float
    savings_percentage: float

    @property
    def total_tokens(self):
        return self.input_tokens + self.output_tokens

    def to_dict(self):
        data = asdict(self)
        data['total_tokens'] = self.total_tokens
        return data


#=======================================================================
# Pricing lookup
#=======================================================================

def get_model_pricing(model, pricing: Optional[Dict[str, dict]] = None):
    """
    Get the pricing for a specific model.

    An exact match wins; otherwise the longest pricing key contained in the
    model name is used, so dated snapshots ('gpt-4o-mini-2024-07-18') and
    custom deployment names resolve to their base model.

    Args:
        model (str): The model name.
        pricing (dict): Pricing table. Defaults to MODEL2PRICE.

    Returns:
        tuple[dict, bool]: The input/output prices and whether the model was found.
    """
    pricing = MODEL2PRICE if pricing is None else pricing
    if model in pricing:
        return pricing[model], True
    candidates = [name for name in pricing if name in model]
    if candidates:
        return pricing[max(candidates, key=len)], True
    return {"input": 0, "output": 0}, False


def merge_pricing(overrides: Optional[Dict[str, dict]] = None) -> Dict[str, dict]:
    """Return MODEL2PRICE updated with per-model overrides."""
    pricing = dict(MODEL2PRICE)
    pricing.update(overrides or {})
    return pricing


def combined_multiplier(discounts: Iterable[float]) -> float:
    """
    Multiplier obtained by composing discounts multiplicatively.

    Args:
        discounts: Fractions in [0, 1], e.g. (0.5, 0.25) for 50% then 25% off.
    """
    multiplier = 1.0
    for discount in discounts:
        if not 0 <= discount <= 1:
            raise ValueError(f"Discount must be between 0 and 1, got {discount}")
        multiplier *= (1 - discount)
    return multiplier


def apply_discounts(cost: float, discounts: Iterable[float]) -> float:
    """Apply each discount in turn to a cost."""
    for discount in discounts:
        cost = cost * combined_multiplier([discount])
    return cost


#=======================================================================
# Token counting
#=======================================================================

def get_encoding(model):
    """
    Get the tiktoken encoding for the specified model.

    Args:
        model (str): Model name.

    Returns:
        tiktoken.core.Encoding: Encoding object for the model.
    """
    try:
        encoding = tiktoken.encoding_for_model(model)
    except KeyError:
        if model.startswith(("o1", "o3", "o4", "gpt-4.1", "gpt-4o")):
            encoding = tiktoken.get_encoding("o200k_base")
        else:
            encoding = tiktoken.get_encoding("cl100k_base")
    return encoding


def count_tokens_aprox(text, chars_per_token=DEFAULT_CHARS_PER_TOKEN):
    """Approximate token count from the character length."""
    if chars_per_token <= 0:
        raise ValueError("chars_per_token must be positive.")
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def make_token_counter(model, estimation='aprox', chars_per_token=DEFAULT_CHARS_PER_TOKEN):
    """
    Build a ``text -> int`` token counter.

    Args:
        model (str): Model name (used by the 'exact' mode).
        estimation (str): 'aprox' (characters per token) or 'exact' (tiktoken).
        chars_per_token (float): Ratio used by the 'aprox' mode.
    """
    if estimation == 'aprox':
        return lambda text: count_tokens_aprox(text, chars_per_token)
    if estimation == 'exact':
        encoding = get_encoding(model)
        return lambda text: len(encoding.encode(text)) if text else 0
    raise ValueError("Invalid estimation type. Use 'aprox' or 'exact'.")


def estimate_output_tokens(input_tokens, output_ratio=DEFAULT_OUTPUT_RATIO,
                           max_output_tokens=DEFAULT_MAX_OUTPUT_TOKENS):
    """Expected completion size: a ratio of the input, capped."""
    if input_tokens <= 0:
        return 0
    return min(max_output_tokens, math.ceil(input_tokens * output_ratio))


#=======================================================================
# Batch estimate
#=======================================================================

def estimate_batch_cost(
        contents: Sequence[str],
        shared_context: Sequence[str] = (),
        model: str = "gpt-4o-mini",
        pricing: Optional[Dict[str, dict]] = None,
        batch_discount: float = 0.5,
        provider_discount: float = 0.0,
        output_ratio: float = DEFAULT_OUTPUT_RATIO,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        estimation: str = 'aprox',
        chars_per_token: float = DEFAULT_CHARS_PER_TOKEN,
        n_jobs: Optional[int] = None,
    ) -> CostEstimate:
    """
    Estimate the tokens and cost of sending one request per content string.

    Shared context strings (system message, prompt template scaffolding,
    collection metadata) are tokenized once and counted again for every
    non-empty unit, since every request repeats them. Empty contents add no
    shared context; submission rejects blank units before estimating. Output
    tokens are a ratio of each unit's input, capped by ``max_output_tokens``.

    Args:
        contents (list[str]): Unit contents.
        shared_context (list[str]): Strings repeated in every request.
        model (str): Model name, looked up in ``pricing``.
        pricing (dict): Pricing table in USD per 1M tokens. Defaults to MODEL2PRICE.
        batch_discount (float): Batch API discount fraction.
        provider_discount (float): Additional provider discount fraction.
        output_ratio (float): Expected output/input token ratio.
        max_output_tokens (int): Output token cap per request.
        estimation (str): 'aprox' or 'exact'.
        chars_per_token (float): Characters per token for 'aprox'.
        n_jobs (int or None): Parallel tokenization workers for 'exact'.
            None runs serially, -1 uses all cores but one.

    Returns:
        CostEstimate: The estimate, with raw and discounted costs.

    Raises:
        ValueError: If the model has no pricing or an argument is invalid.
    """
    prices, found = get_model_pricing(model, pricing)
    if not found:
        supported = ', '.join((pricing or MODEL2PRICE).keys())
        raise ValueError(f"Model {model} not found in pricing data. Supported models are: {supported}")

    count_tokens = make_token_counter(model, estimation, chars_per_token)
    context_tokens = sum(count_tokens(text) for text in shared_context if text)

    contents = list(contents)
    if estimation == 'exact' and n_jobs is not None and len(contents) > 1:
        max_workers = resolve_n_jobs(n_jobs, verbose=False)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            unit_tokens = list(executor.map(count_tokens, contents))
    else:
        unit_tokens = [count_tokens(content) for content in contents]

    input_tokens = 0
    output_tokens = 0
    for content, tokens in zip(contents, unit_tokens):
        if not content:
            continue
        input_tokens += tokens + context_tokens
        output_tokens += estimate_output_tokens(tokens, output_ratio, max_output_tokens)

    raw_input_cost = (input_tokens / 1_000_000) * prices['input']
    raw_output_cost = (output_tokens / 1_000_000) * prices['output']
    raw_cost = raw_input_cost + raw_output_cost

    multiplier = combined_multiplier([batch_discount, provider_discount])
    discounted_cost = raw_cost * multiplier
    savings = ((raw_cost - discounted_cost) / raw_cost * 100) if raw_cost > 0 else 0.0

    return CostEstimate(
        model=model,
        n_units=len(contents),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        raw_input_cost=raw_input_cost,
        raw_output_cost=raw_output_cost,
        raw_cost=raw_cost,
        multiplier=multiplier,
        discounted_cost=discounted_cost,
        savings_percentage=savings,
    )


def compute_actual_cost(usage: dict, model: str, pricing=None, discounts=()) -> float:
    """
    Cost of one completed request from its reported usage.

    Args:
        usage (dict): Usage block with 'prompt_tokens' and 'completion_tokens'.
        model (str): Model that served the request.
        pricing (dict): Pricing table. Defaults to MODEL2PRICE.
        discounts: Discount fractions applied multiplicatively.
    """
    prices, _ = get_model_pricing(model or "", pricing)
    prompt_cost = (usage.get('prompt_tokens', 0) / 1_000_000) * prices['input']
    completion_cost = (usage.get('completion_tokens', 0) / 1_000_000) * prices['output']
    return apply_discounts(prompt_cost + completion_cost, discounts)
