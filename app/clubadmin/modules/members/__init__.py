"""
Members module: user directory, signup review, memberships, CSV export.
"""
