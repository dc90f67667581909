"""LangGraph agent definition for syncfeed."""

import sqlite3
from typing import Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import SystemMessage, ToolMessage
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, MessagesState, StateGraph

from syncfeed.tools import (
    get_items,
    list_feeds,
    mark_as_read,
    read_item,
    rename_feed,
    search_items,
    star_item,
    subscribe_to_feed,
    unstar_item,
    unsubscribe_from_feed,
)

SYSTEM_PROMPT = """You are syncfeed, a helpful assistant for reading RSS and Atom feeds.

The user's subscriptions, read state and stars live in a folder that syncs between their devices, so anything you change here shows up everywhere.

You help users:
- Subscribe to RSS and Atom feeds by URL
- View their latest feed items and read them in full
- List, rename and unsubscribe from feeds
- Search for items by keyword across all feeds
- Mark items as read and star the ones worth keeping

When a user wants to subscribe to a feed, use the subscribe_to_feed tool with the URL they provide.
If subscribe_to_feed reports a feed_url, the page links to that feed: offer to subscribe to it.
When a user asks to see items, news, or what's new, use the get_items tool. You can filter by:
- A specific feed (by id, title or URL)
- Date range (since/until in ISO 8601 format)
- Unread or starred items only
When a user wants to read an item, use the read_item tool with its id. Reading an item marks it as read.
When a user asks to see their feeds or subscriptions, use the list_feeds tool.
When a user wants to rename a feed, use the rename_feed tool. An empty title restores the feed's own title.
When a user wants to unsubscribe or remove a feed, use the unsubscribe_from_feed tool. Warn them first that a removed feed cannot be subscribed to again.
When a user wants to search for items by keyword, use the search_items tool.
When a user wants to mark items as read, use the mark_as_read tool. You can mark specific item IDs or all items from a feed.
Marking as read cannot be undone; there is no way to mark an item unread.
When a user wants to keep an item for later, use star_item; use unstar_item to remove the star.
When the user's intent is unclear, ask a clarifying question rather than guessing.
Present feed items in a readable format: title, link, date, and a brief summary.
Be concise but informative in your responses."""

# All tools available to the agent
TOOLS = [
    subscribe_to_feed,
    get_items,
    read_item,
    list_feeds,
    unsubscribe_from_feed,
    rename_feed,
    search_items,
    mark_as_read,
    star_item,
    unstar_item,
]


def create_agent(
    checkpoint_db_path: str = "syncfeed_checkpoints.db",
    tools: list | None = None,
):
    """Create and compile the LangGraph agent.

    Args:
        checkpoint_db_path: Path to SQLite database for LangGraph checkpointing.
        tools: List of tool functions to bind to the agent. If None, uses default TOOLS.

    Returns:
        Compiled LangGraph agent.
    """
    if tools is None:
        tools = TOOLS

    model = ChatAnthropic(
        model="claude-sonnet-4-5-20250929",
        temperature=0,
    )

    if tools:
        model_with_tools = model.bind_tools(tools)
    else:
        model_with_tools = model

    tools_by_name = {tool.name: tool for tool in tools}

    def agent_node(state: MessagesState):
        """LLM call node: decides whether to use a tool or respond directly."""
        messages = [SystemMessage(content=SYSTEM_PROMPT)] + state["messages"]
        response = model_with_tools.invoke(messages)
        return {"messages": [response]}

    def tool_node(state: MessagesState):
        """Execute tool calls from the LLM response."""
        results = []
        last_message = state["messages"][-1]
        for tool_call in last_message.tool_calls:
            tool = tools_by_name[tool_call["name"]]
            result = tool.invoke(tool_call["args"])
            results.append(
                ToolMessage(content=str(result), tool_call_id=tool_call["id"])
            )
        return {"messages": results}

    def should_continue(state: MessagesState) -> Literal["tool_node", "__end__"]:
        """Route to tool execution or end based on LLM output."""
        last_message = state["messages"][-1]
        if last_message.tool_calls:
            return "tool_node"
        return END

    builder = StateGraph(MessagesState)
    builder.add_node("agent_node", agent_node)
    builder.add_node("tool_node", tool_node)

    builder.add_edge(START, "agent_node")
    builder.add_conditional_edges("agent_node", should_continue, ["tool_node", END])
    builder.add_edge("tool_node", "agent_node")

    # Conversation history only; feed state lives in the synced data directory.
    checkpointer = SqliteSaver(sqlite3.connect(checkpoint_db_path, check_same_thread=False))
    return builder.compile(checkpointer=checkpointer)
