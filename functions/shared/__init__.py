"""
Types and errors shared by the media pipeline and the backend service.
"""
