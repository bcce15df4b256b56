"""Core — models, engine, renderer and the ambient services around them."""
