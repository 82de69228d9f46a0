"""
Static analysis of Python source.

- tokens: comment and string spans from the token stream
- analyzer: StaticAnalyzer, line/function/block classification
- blocks: BlockTree, nesting roll-ups over block records
"""

from .analyzer import StaticAnalyzer
from .blocks import BlockTree

__all__ = ["StaticAnalyzer", "BlockTree"]
