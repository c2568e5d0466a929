"""Commit log: durable per-group ordered record of every committed change.

Two stores share one read contract: the SQL store written by the commit
path, and the bucketed file artifact an offline reconstruction reads.
"""
