"""FieldFlow - Workflow Services"""
