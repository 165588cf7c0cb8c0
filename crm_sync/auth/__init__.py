"""Operator authentication package."""
