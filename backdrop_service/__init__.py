"""
Photo background replacement engine.

Exposes reusable primitives for loading the segmentation model, generating
subject masks (neural network or heuristic fallback), compositing subjects
onto new backgrounds and running the whole pipeline on local files.
"""
