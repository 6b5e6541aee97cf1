"""
agent-runtime: an LLM agent loop with tool execution, context compaction
and a replaying session runtime.
"""

__version__ = "0.1.0"
