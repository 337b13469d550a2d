"""MCP server exposing Salesforce query, DML, Apex and metadata operations as tools."""

__version__ = "0.1.0"
