"""
Fitness and shadow-outcome analytics
"""
from .fitness import FitnessEngine, compute_fitness
from .shadow_outcomes import ShadowOutcomeCalculator

__all__ = ["FitnessEngine", "compute_fitness", "ShadowOutcomeCalculator"]
