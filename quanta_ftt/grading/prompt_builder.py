"""
Prompt builder for the feedback pipeline.

Assembles the user messages sent to each stage. System instructions and
chain-of-thought example shots come from `StageInstructions`; this module
only lays out the problem data around them.
"""

from quanta_ftt.models import Problem


class PromptBuilder:
    """
    Builds the per-stage user prompts.

    Every prompt for a given stage and input is identical across reruns,
    so repeated calls differ only by model sampling.
    """

    REFINE_CORRECTION_PROMPT = """The length of your output is more than twice the length of the Input Solution, which violates one of the rules from the instructions you need to follow!

Please carefully go through the instructions and the original input solution again. In particular, please note:
- The length of the refined solution must **NOT** exceed twice the length of the original solution, but it should be at least as long as the original version.
- You must **NOT** fill in gaps in the explanations or elaborate on any claims. If the solution is missing explanations for some claims: do **NOT** add them!
- You only need to improve readability, fix grammatical issues, and, if the solution is longer than 2-3 sentences, break it into clear steps.
- Again, just as before you **MUST NOT** fix the solution, correct the final answer, etc... If the original solution has errors, keep them!

Now, please output (in **Markdown**) a refined version of the Input Solution. Once again, do **NOT** include any markers or problem statement."""

    @staticmethod
    def build_sanity_prompt(problem: Problem, candidate: str, shots: str = "") -> str:
        """Build the prompt for one sanity-check call."""
        return f"""# Here is the problem statement:
{problem.statement}
# For which the correct solution(s) are:
{problem.reference_solutions}
# And the Input Solution that I want you to do a sanity check for is:
{candidate}

{shots}""".rstrip()

    @staticmethod
    def build_refine_prompt(problem: Problem, candidate: str) -> str:
        """Build the first-pass refinement prompt."""
        return f"""# Here is the problem statement:
{problem.statement}
# And here is the Input Solution that I want you to proofread and refine as per given instructions:
{candidate}"""

    @staticmethod
    def build_validity_prompt(
        problem: Problem, candidate: str, refined_candidate: str, shots: str = ""
    ) -> str:
        """
        Build the prompt for one validity-review call.

        Args:
            problem: The problem under review.
            candidate: The solution exactly as submitted.
            refined_candidate: Proofread version of the solution, given as context.
            shots: Chain-of-thought examples appended after the inputs.

        Returns:
            The formatted user prompt.
        """
        return f"""# Here is the problem statement:
{problem.statement}
# For which the correct solution(s) are:
{problem.reference_solutions}
# Optional extra requirements for validation process are:
{problem.validity_requirements}
# The Input Solution that I want you to give me feedback for is:
{candidate}
# Finally, here is a proofread and more potentially clearer version of the Input Solution. Please take it into account when producing feedback as well:
{refined_candidate}

{shots}""".rstrip()

    @staticmethod
    def build_quality_prompt(problem: Problem, candidate: str, shots: str = "") -> str:
        """Build the prompt for one quality-review call."""
        return f"""# Here is the problem statement:
{problem.statement}
# For which the correct solution(s) are:
{problem.reference_solutions}
# Optional extra requirements for quality-reviewing process are:
{problem.quality_requirements}
# The Input Solution that I want you to give me feedback for is:
{candidate}

{shots}""".rstrip()

    @staticmethod
    def build_cleaner_prompt(feedback: str) -> str:
        """Build the prompt asking to strip answer hints from one feedback field."""
        return f"""Here is the feedback that you need to potentially refine as per given instructions:
{feedback}"""
