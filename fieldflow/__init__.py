"""FieldFlow - Job lifecycle and automation workflow core"""
