"""
Explainability

Rule-based and generated explanations, counterfactuals and the
what-if simulator.
"""
