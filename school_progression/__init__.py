"""
Stage Progression Engine

Decides, for a school and program round, which curriculum stages
(inspire → investigate → act) are complete and whether the round's award
has been earned.
"""
__version__ = "1.0.0"
