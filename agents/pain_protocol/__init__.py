"""
Pain Protocol Agent
===================

Analgesic regimen recommendation service driven by a treatment protocol table.

Given a patient's reported pain score and clinical snapshot (renal and hepatic
function, blood counts, electrolytes, weight, age, allergies, diagnoses and
pain-score history), this agent selects the matching protocol rows and runs
each one through an ordered clinical rule pipeline to produce a vetted drug
recommendation, or a failure record with every rejection reason.

Key Components:
- Rule-text parser for the free-text protocol cells
- Renal/hepatic class normalizer (letter <-> mL/min)
- Eleven ordered rule appliers (pain trend ... renal)
- Per-row correction aggregator (minimum dose, maximum interval)
- Protocol table loader (xlsx/csv)

Port: 8006
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Team"
