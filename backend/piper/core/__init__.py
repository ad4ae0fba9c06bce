"""核心模块"""
