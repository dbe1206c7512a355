"""System and user prompts for the three model calls.

The prompt writer sees a random sample of example prompts each round so
that its output drifts across formats instead of settling on one template.
"""

from __future__ import annotations

import random

EXAMPLE_PROMPTS: list[str] = [
    "The worst thing to hear from your dentist mid-procedure",
    "A rejected flavor of sparkling water",
    "What your houseplant whispers when you leave for work",
    "The least reassuring thing a pilot can say over the intercom",
    "A terrible name for a retirement home",
    "The real reason the dinosaurs went extinct",
    "Something you should never say at a job interview",
    "A new Olympic sport nobody asked for",
    "The secret ingredient in grandma's famous soup",
    "What the Mona Lisa is actually smiling about",
    "A bad slogan for a funeral home",
    "The title of the world's most boring autobiography",
    "What aliens would find most confusing about Earth",
    "A fortune cookie message that would ruin your day",
    "The worst superpower to get at age 80",
    "An unusual thing to find in a hotel minibar",
    "The most awkward thing to say after a first kiss",
    "A warning label that should be on every smartphone",
    "What your cat is plotting right now",
    "A rejected name for a Disney sidekick",
    "The worst thing to shout in a crowded library",
    "A surprising item on a wizard's grocery list",
    "The last thing you want to see in your rearview mirror",
    "A feature the next smart fridge definitely should not have",
    "The one rule of the world's strangest book club",
    "What a pirate keeps in their emergency kit",
    "A motivational poster that would demotivate everyone",
    "The worst possible theme for a wedding",
    "What ghosts complain about in their group chat",
    "A terrible thing to name your first boat",
    "The worst thing to find out about your new roommate",
    "An honest tagline for a gym",
    "The real reason the chicken crossed the road",
    "What a toddler would put in the Constitution",
    "A terrible idea for a reality TV show",
    "The first thing a robot does on its day off",
    "Something you should not bring to a potluck",
    "The strangest thing to keep in a safety deposit box",
    "What the moon would say if it could talk",
    "A museum exhibit that would close on opening day",
]

PROMPT_SAMPLE_SIZE = 24

PROMPT_USER = (
    "Write one original fill-in-the-blank prompt. Be creative and avoid "
    "common patterns."
)

ANSWER_SYSTEM = (
    "You are a contestant in a comedy game. You will get a fill-in-the-blank "
    "prompt. Give the funniest answer you can: surprising, sharp and short. "
    "Reply with ONLY the answer, no quotes and no explanation, in under 12 words."
)

VOTE_SYSTEM = (
    "You are judging a comedy game. You will see a fill-in-the-blank prompt and "
    'two answers. Pick the funnier one. You MUST respond with exactly "A" or "B".'
)


def build_prompt_system(rng: random.Random | None = None) -> str:
    """System prompt for the prompt writer, with a fresh sample of examples."""
    rng = rng or random
    sample_size = min(PROMPT_SAMPLE_SIZE, len(EXAMPLE_PROMPTS))
    examples = rng.sample(EXAMPLE_PROMPTS, sample_size)
    bullet_list = "\n".join(f"- {p}" for p in examples)
    return (
        "You write material for a comedy game show. Produce a single funny "
        "fill-in-the-blank prompt that contestants will try to answer. Return "
        "ONLY the prompt text, under 15 words.\n\n"
        "Vary the format widely. Do not always start with \"The worst thing...\". "
        f"Some examples of the range of styles:\n\n{bullet_list}\n\n"
        "Come up with something ORIGINAL. Do not copy these examples."
    )


def answer_user_prompt(prompt: str) -> str:
    return f"Fill in the blank: {prompt}"


def vote_user_prompt(prompt: str, answer_a: str, answer_b: str) -> str:
    return (
        f'Prompt: "{prompt}"\n\n'
        f'Answer A: "{answer_a}"\n'
        f'Answer B: "{answer_b}"\n\n'
        "Which is funnier? Reply with just A or B."
    )
