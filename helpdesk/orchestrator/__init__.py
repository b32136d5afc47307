"""AI response orchestration for the helpdesk chat widget.

Main Entry Points:
    chat.respond_with_ai: Answer a widget message as a streamed response.
    draft.generate_draft_response: Draft an email reply for staff review.

Supporting modules:
    completion: Multi-step tool-calling completion loop.
    reasoning: Optional reasoning pass before the completion.
    tools: Built-in, mailbox and client-supplied tools.
"""
