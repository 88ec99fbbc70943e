"""
工具模块

- app_paths: data / log directory resolution and "~" expansion
"""
