"""
Media gallery: image uploads (direct or presigned S3), background processing, metadata edits.
"""
