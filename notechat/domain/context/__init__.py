# This module handles context assembly for a single user message

# +---------------------+     +---------------------+
# |   Message context   |     |   System prompt     |
# |---------------------|     |---------------------|
# | Attached notes      |     | Notes included by   |
# | Active note         |     |   templating        |
# | URLs                |     +---------------------+
# | Selected text       |               |
# +---------------------+               | (skip duplicates)
#           |                           |
#           v                           v
# +----------------------------------------------+
# |        ContextManager (parallel fetch)       |
# |----------------------------------------------|
# | FileParserManager -> <note_context>          |
# | Mention           -> <url_content>           |
# |                      <youtube_transcript>    |
# | selection         -> <selected_text>         |
# | failures          -> envelope.errors         |
# +----------------------------------------------+
#           |
#           v
#   processed_text + ContextEnvelope -> MessageRepository
