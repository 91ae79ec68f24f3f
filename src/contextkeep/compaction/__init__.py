from contextkeep.compaction.summarizer import LLMCall, Summarizer, make_llm_call

__all__ = ["LLMCall", "Summarizer", "make_llm_call"]
