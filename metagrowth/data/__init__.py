"""Simulator output records and their stratification."""

from metagrowth.data.script_result import Observation, ScriptResult
from metagrowth.data.stratification import StratumDataBlock, stratify

__all__ = ["Observation", "ScriptResult", "StratumDataBlock", "stratify"]
