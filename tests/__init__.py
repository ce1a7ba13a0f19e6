"""Tests for the approval workflow engine, one module per engine component"""
