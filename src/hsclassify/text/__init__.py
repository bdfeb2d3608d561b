from .tokens import jaccard, stem, token_set, tokenize

__all__ = ["jaccard", "stem", "token_set", "tokenize"]
