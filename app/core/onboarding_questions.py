from dataclasses import dataclass


@dataclass(frozen=True)
class OnboardingQuestion:
    step: int
    prompt: str
    short_label: str
    answer_required: bool


ONBOARDING_QUESTIONS: tuple[OnboardingQuestion, ...] = (
    OnboardingQuestion(
        step=0,
        prompt=(
            "In your own words, what's the #1 feeling or achievement you're chasing? "
            "(e.g., 'boundless energy to play with my kids,' 'unstoppable confidence')."
        ),
        short_label="Feeling or achievement you're chasing?",
        answer_required=True,
    ),
    OnboardingQuestion(
        step=1,
        prompt=(
            "Powerful. We'll use that as your anchor. Now, on a scale of 1-10, how confident are you "
            "about sticking to a new routine? And what's the single biggest thing that you think "
            "might get in your way?"
        ),
        short_label="Confidence level and main obstacle?",
        answer_required=True,
    ),
    OnboardingQuestion(
        step=2,
        prompt=(
            "Thanks for that honesty. Now, for your nutrition: what does a real, satisfying 'treat' "
            "or favourite meal look like for you? I believe in a plan that includes your real life."
        ),
        short_label="Real, satisfying 'treat' or favourite meal?",
        answer_required=True,
    ),
    OnboardingQuestion(
        step=3,
        prompt=(
            "Love it. My goal is to make your nutrition sustainable, not restrictive. Finally, what "
            "does a 'win' look like for you at the end of a successful day? Is it ticking off all "
            "your habits, having more energy, or something else?"
        ),
        short_label="What does a 'win' look like at the end of a successful day?",
        answer_required=True,
    ),
    OnboardingQuestion(
        step=4,
        prompt=(
            "Perfect. I now have a deep understanding of you, both your goals and your motivation. "
            "I'm creating your fully personalized plan now. Check the Plan tab for it in a moment! "
            "Remember, you can chat with me here anytime for advice. Let's begin!"
        ),
        short_label="",
        answer_required=False,
    ),
)

TOTAL_ONBOARDING_STEPS = len(ONBOARDING_QUESTIONS)


def validate_question_table(questions: tuple[OnboardingQuestion, ...]) -> None:
    for index, question in enumerate(questions):
        if question.step != index:
            raise ValueError(
                f"Onboarding table must be contiguous from 0; found step {question.step} at position {index}"
            )
