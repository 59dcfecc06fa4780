"""
Video processing, perceptual hashing, minting, auth and the upload pipeline.
"""
