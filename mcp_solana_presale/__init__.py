"""
Solana Presale Launchpad Package Initialization

This package runs timed, fixed-capacity presale rounds for Solana token launches, served
over the Model Context Protocol (MCP). Participants deposit SOL into an escrow; a round that
reaches its target launches the token with the trading fees shared between the creator and
the participants, and a round that expires refunds everyone.

The package includes:
- Presale policy constants and the fee share split
- A persistent JSON ledger of presales and participants
- The presale lifecycle state machine and the launch orchestrator
- Solana RPC, launch service and market data clients
- Rate limiting and custom error handling
- MCP server implementation for easy integration
"""
