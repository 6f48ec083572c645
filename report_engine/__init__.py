"""
报表定义与执行引擎
"""
