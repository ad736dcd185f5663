"""
Background removal with tunable edge refinement.

Exposes reusable primitives for decoding images, segmenting them behind an
injectable interface, refining the probability map into an alpha channel,
compositing and encoding the cutout, and serving an interactive session over
FastAPI.
"""
