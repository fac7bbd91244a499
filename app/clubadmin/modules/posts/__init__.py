"""
Posts module: news/blog posts with a debounced autosave editor.
"""
