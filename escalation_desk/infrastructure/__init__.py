"""
Infrastructure Layer
=====================

Low-level technical concerns shared by every bounded context:
- Database connection management
- Portal collaborator tables (users, students, tickets, notifications)
"""
