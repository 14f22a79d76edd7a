"""CLIモジュール"""
