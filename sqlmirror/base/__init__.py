# ============================================================================
# sqlmirror/base/__init__.py
# Foundational components: configuration and logging setup
# ============================================================================
