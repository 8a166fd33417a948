"""File regeneration: the realtime fixer driven by reviewer-reported issues."""

from agents.code_fixer import RealtimeCodeFixer
from config.defaults import DEFAULTS


class FileRegenerationOperation(RealtimeCodeFixer):
    """Rewrites one file to resolve specific issues, with a larger pass budget."""

    name = "file_regeneration"
    action = "file_regeneration"
    prompt_name = "regeneration"
    quick_prompt_name = "code_fixer_quick"
    system_prompt = (
        "You are fixing specific reported problems in one file of a web application. "
        "Change only what is needed and answer with SEARCH/REPLACE blocks or a full <content> rewrite."
    )

    def __init__(self, passes=None, fuzzy_threshold=None, max_diff_retries=None):
        super().__init__(
            passes=passes or DEFAULTS["regeneration_passes"],
            fuzzy_threshold=fuzzy_threshold,
            max_diff_retries=max_diff_retries,
        )
