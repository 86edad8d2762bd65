"""
Chat-supervisor scenario: one junior phone agent backed by a supervisor model.

The junior agent only handles greetings, chit-chat and requests to repeat
itself. Everything else goes to the supervisor, which can call the tools below
and writes the exact text the junior agent reads out.
"""

from typing import Any, Dict

from clinconnect.agents.base import Agent, AgentId, Tool, ToolContext, ToolResult, object_schema

COMPANY_NAME = "ClinConnect"

CHAT_GREETING = "Hi, you've reached ClinConnect, how can I help you today?"

SUPERVISOR_TOOL_NAME = "get_next_response_from_supervisor"

SUPERVISOR_TOOL_SCHEMA = {
    "type": "function",
    "function": {
        "name": SUPERVISOR_TOOL_NAME,
        "description": "Returns the next supervisor message guiding the junior ClinConnect agent.",
        "parameters": object_schema(
            {
                "relevantContextFromLastUserMessage": {
                    "type": "string",
                    "description": "Key info from the caller's most recent message. Empty if nothing new was said.",
                }
            },
            ("relevantContextFromLastUserMessage",),
        ),
    },
}

CHAT_AGENT = Agent(
    id=AgentId.CHAT,
    display_name="ClinConnect Assistant",
    introduction=CHAT_GREETING,
    delegates_to_supervisor=True,
    instructions=f"""You are a helpful junior customer service agent for {COMPANY_NAME}, speaking with a caller on the phone.
You are very new and can only handle basic tasks. You rely on a more experienced Supervisor Agent through the {SUPERVISOR_TOOL_NAME} tool.

# Allow list
You may answer these yourself:
- Greetings. If the caller says hello later in the call, answer briefly ("Hi there!") instead of repeating the opening greeting.
- Basic chit-chat such as "how are you?" or "thank you".
- Requests to repeat or clarify what you just said.
- Asking the caller for details the supervisor will need: a topic for policy questions, their phone number for account questions, or their ZIP code to find a clinic.

For anything else, including any factual, account-specific or process question, call {SUPERVISOR_TOOL_NAME}. Pass only the key new information from the caller's last message, or an empty string.

# Tone
Neutral, concise and to the point. Never say the same thing twice in one call.""",
)


ACCOUNT_INFO: Dict[str, Any] = {
    "accountId": "CC-123456",
    "name": "Alex Johnson",
    "phone": "+1-206-135-1246",
    "email": "alex.johnson@email.com",
    "membershipType": "Premium Navigator",
    "status": "Active",
    "joinDate": "2024-05-15",
    "address": {"street": "1234 Pine St", "city": "Seattle", "state": "WA", "zip": "98101"},
    "medicalProfile": {
        "conditions": ["Type 2 Diabetes", "Hypertension"],
        "currentTrials": 2,
        "completedTrials": 1,
        "interestedIn": ["Cardiovascular", "Endocrinology"],
        "notes": "Looking for trials in Seattle area, prefers virtual visits when possible.",
    },
}

POLICY_DOCS = [
    {
        "id": "CC-010",
        "name": "Trial Matching Algorithm Policy",
        "topic": "trial matching and algorithm",
        "content": (
            "ClinConnect's matching considers patient medical history, location preferences, trial "
            "inclusion and exclusion criteria, and patient-reported outcomes. Trials within 50 miles "
            "are prioritised unless the patient asks for broader options. All matches undergo "
            "clinical review before presentation to patients."
        ),
    },
    {
        "id": "CC-020",
        "name": "Privacy and HIPAA Compliance Policy",
        "topic": "privacy and HIPAA compliance",
        "content": (
            "ClinConnect maintains strict HIPAA compliance. Medical information is encrypted at rest "
            "and in transit, with access limited to authorized clinical staff. Patient consent is "
            "required before sharing any information with trial sponsors, and patients can request "
            "deletion at any time."
        ),
    },
    {
        "id": "CC-030",
        "name": "Navigator Support Services Policy",
        "topic": "navigator support and concierge services",
        "content": (
            "ClinConnect provides free navigator support: trial matching, enrollment assistance, "
            "appointment coordination, transportation support and ongoing education. Premium "
            "Navigator members receive priority scheduling and dedicated representatives."
        ),
    },
    {
        "id": "CC-040",
        "name": "Partner Clinic Network Policy",
        "topic": "partner clinics and research centers",
        "content": (
            "ClinConnect partners with over 2,500 vetted research centers and clinics nationwide. "
            "All partner clinics maintain current FDA and IRB approvals, and travel assistance is "
            "available for qualifying studies."
        ),
    },
]

PARTNER_CLINICS = [
    {"name": "ClinConnect Partner - UCSF Clinical Research Center", "address": "1001 Potrero Ave, San Francisco, CA", "zip_code": "94110", "phone": "(415) 555-1001", "hours": "Mon-Fri 8am-5pm"},
    {"name": "ClinConnect Partner - Stanford Medicine Research", "address": "300 Pasteur Dr, Stanford, CA", "zip_code": "94305", "phone": "(650) 555-2002", "hours": "Mon-Fri 7am-6pm"},
    {"name": "ClinConnect Partner - UC Davis Clinical Trials", "address": "2315 Stockton Blvd, Sacramento, CA", "zip_code": "95817", "phone": "(916) 555-3003", "hours": "Mon-Fri 8am-4pm"},
    {"name": "ClinConnect Partner - Cedars-Sinai Research", "address": "8700 Beverly Blvd, Los Angeles, CA", "zip_code": "90048", "phone": "(310) 555-4004", "hours": "Mon-Fri 7am-7pm"},
    {"name": "ClinConnect Partner - UC San Diego Clinical Research", "address": "9500 Gilman Dr, La Jolla, CA", "zip_code": "92093", "phone": "(858) 555-5005", "hours": "Mon-Fri 8am-5pm"},
    {"name": "ClinConnect Partner - NYU Langone Clinical Trials", "address": "550 1st Ave, New York, NY", "zip_code": "10016", "phone": "(212) 555-7007", "hours": "Mon-Fri 7am-8pm"},
    {"name": "ClinConnect Partner - Mass General Research", "address": "55 Fruit St, Boston, MA", "zip_code": "02114", "phone": "(617) 555-8008", "hours": "Mon-Fri 8am-6pm"},
    {"name": "ClinConnect Partner - Georgetown University Medical", "address": "3800 Reservoir Rd NW, Washington, DC", "zip_code": "20007", "phone": "(202) 555-9009", "hours": "Mon-Fri 8am-5pm"},
    {"name": "ClinConnect Partner - University of Miami Research", "address": "1611 NW 12th Ave, Miami, FL", "zip_code": "33136", "phone": "(305) 555-1010", "hours": "Mon-Fri 8am-6pm"},
]


def lookup_policy_document(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    words = [w for w in str(args.get("topic", "")).lower().split() if len(w) > 2]
    matches = [
        doc for doc in POLICY_DOCS
        if any(w in doc["topic"].lower() or w in doc["name"].lower() for w in words)
    ]
    docs = matches or POLICY_DOCS
    return ToolResult(summary=docs[0]["content"], data={"documents": docs})


def get_user_account_info(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    return ToolResult(
        summary=f"Found the {ACCOUNT_INFO['membershipType']} account for {ACCOUNT_INFO['name']}.",
        data={"account": ACCOUNT_INFO, "lookupPhone": args.get("phone_number")},
    )


def find_nearest_clinic(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    zip_code = str(args.get("zip_code", "")).strip()
    if not zip_code.isdigit():
        return ToolResult(summary="I need a five-digit ZIP code to find a clinic.", success=False)
    ranked = sorted(PARTNER_CLINICS, key=lambda c: abs(int(c["zip_code"]) - int(zip_code)))
    nearest = ranked[0]
    return ToolResult(
        summary=f"The nearest partner clinic is {nearest['name']} at {nearest['address']}.",
        data={"clinics": ranked[:3]},
    )


SUPERVISOR_TOOLS = (
    Tool(
        "lookup_policy_document",
        "Searches internal ClinConnect policies and procedures by topic.",
        object_schema({"topic": {"type": "string", "description": "Policy topic or keyword"}}, ("topic",)),
        lookup_policy_document,
    ),
    Tool(
        "get_user_account_info",
        "Retrieves a caller's ClinConnect account profile (read-only).",
        object_schema(
            {"phone_number": {"type": "string", "description": "Caller's phone number"}},
            ("phone_number",),
        ),
        get_user_account_info,
    ),
    Tool(
        "find_nearest_clinic",
        "Returns the nearest partner clinic for a ZIP code.",
        object_schema(
            {"zip_code": {"type": "string", "description": "Five-digit ZIP code"}}, ("zip_code",)
        ),
        find_nearest_clinic,
    ),
)

SUPERVISOR_INSTRUCTIONS = f"""You are an expert customer-service supervisor agent for {COMPANY_NAME}, guiding a junior agent who is speaking directly with callers on the phone. {COMPANY_NAME} connects patients with actively recruiting clinical trials and provides free navigator support.

- You may answer directly or call a tool first, then answer.
- Before answering any factual question about {COMPANY_NAME}'s services, a caller's account, trial status or internal policy, call an appropriate tool and rely only on what it returns.
- If a tool needs data you don't have, tell the junior agent to ask the caller for it. Never pass empty or placeholder values.
- Do not give personal medical advice, and decline political, religious or controversial topics.
- If the caller asks for a human, offer to connect them with a human navigator.

Your text is read to the caller exactly as written, so write it as spoken words: short sentences, no lists, no markdown, only the one or two most important facts."""
