"""
Clinical-trials scenario: four cooperating phone agents.

- intake: collects the caller's medical profile and preferences
- search: finds and explains matching trials
- enrollment: applications, screening visits, study-team contact
- support: emotional support, rights, side effects, resources

Tool handlers are deterministic and keep all state in the call's context.
"""

import logging
import uuid
from typing import Any, Dict, List

from clinconnect.agents.base import (
    Agent,
    AgentId,
    Tool,
    ToolContext,
    ToolResult,
    object_schema,
    string_list,
)
from clinconnect.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

COMPANY_NAME = "MedConnect Clinical Trials Platform"

PHONE_STYLE = (
    "\n\nYou are speaking with the caller over the phone. Keep every reply to one to three "
    "short sentences, avoid lists and markdown, and ask one question at a time. If another "
    "specialist is better placed to help, call transfer_to_agent instead of describing a "
    "transfer in words."
)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# Intake tools

_PROFILE_FIELDS = {
    "age": {"type": "number", "description": "Patient age in years"},
    "gender": {"type": "string", "enum": ["male", "female", "other"], "description": "Patient gender"},
    "conditions": string_list("Current medical conditions or diagnoses"),
    "medications": string_list("Current medications"),
    "allergies": string_list("Known allergies"),
    "medicalHistory": string_list("Relevant past medical history"),
    "city": {"type": "string", "description": "Patient city"},
    "state": {"type": "string", "description": "Patient state or province"},
    "country": {"type": "string", "description": "Patient country"},
    "maxDistance": {"type": "number", "description": "Maximum travel distance in miles"},
    "travelWillingness": {
        "type": "string",
        "enum": ["local", "regional", "national", "international"],
        "description": "General travel willingness",
    },
    "phasePreference": string_list("Preferred trial phases, e.g. Phase II"),
    "contactPreference": {
        "type": "string",
        "enum": ["phone", "email", "both"],
        "description": "Preferred contact method",
    },
}


def record_patient_details(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Store whatever profile fields the caller has mentioned so far."""
    fragment = {k: v for k, v in args.items() if k in _PROFILE_FIELDS and v not in (None, "", [])}
    if not fragment:
        return ToolResult(summary="Could you tell me a bit more about your health?", success=False)
    return ToolResult(
        summary="Thank you, I've noted that. Could you tell me a little more, like your age and where you live?",
        data={"recorded": fragment},
        context_update={"patient_profile": fragment},
    )


def create_patient_profile(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """Finalise the profile and pass the call on to trial search."""
    existing = ctx.context.get("patient_profile", {})
    patient_id = existing.get("patientId") or _new_id("patient")
    profile = {k: v for k, v in args.items() if k in _PROFILE_FIELDS}
    profile["patientId"] = patient_id
    conditions = profile.get("conditions") or existing.get("conditions") or []
    location = ", ".join(p for p in (profile.get("city"), profile.get("state")) if p)
    logger.info(f"Patient profile {patient_id} completed for call {ctx.call_id}")
    return ToolResult(
        summary="Your profile is all set. Let me look for trials that could be a good fit.",
        data={
            "patientId": patient_id,
            "profileSummary": {
                "conditions": conditions,
                "location": location,
                "travelWillingness": profile.get("travelWillingness"),
            },
        },
        context_update={"patient_profile": profile},
        handoff=AgentId.SEARCH,
    )


def update_patient_profile(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    updates = args.get("updates") or {}
    if not isinstance(updates, dict) or not updates:
        return ToolResult(summary="What would you like me to change?", success=False)
    return ToolResult(
        summary="I've updated your profile.",
        data={"updated": sorted(updates)},
        context_update={"patient_profile": updates},
    )


_EXPLANATIONS = {
    "basics": "Clinical trials are research studies that test new treatments, drugs, or medical devices in people. They help doctors learn if new treatments are safe and effective.",
    "phases": "Trials happen in phases. Phase one tests safety in small groups, phase two tests effectiveness, phase three compares against standard treatment in larger groups, and phase four watches long-term effects after approval.",
    "rights": "As a participant you can understand the study, ask questions, leave at any time, receive quality care, and have your privacy protected.",
    "benefits_risks": "Benefits can include access to new treatments and close monitoring by experts. Risks can include unknown side effects, time commitment, and the chance the treatment does not work.",
    "process": "The process usually involves screening to see if you qualify, informed consent, a treatment phase with regular check-ins, and follow-up visits.",
    "costs": "Trials typically cover the investigational treatment and trial-related care. You may still be responsible for standard medical care costs.",
    "informed_consent": "Informed consent is how you learn about a trial and decide whether to take part. You can ask questions and take your time.",
}


def explain_clinical_trials(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    topic = args.get("topic", "basics")
    explanation = _EXPLANATIONS.get(topic, _EXPLANATIONS["basics"])
    return ToolResult(summary=explanation, data={"topic": topic, "explanation": explanation})


# Search tools


async def search_trials_by_condition(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    if ctx.trials is None:
        raise RuntimeError("No trial data source available")
    conditions: List[str] = args.get("conditions") or ctx.context.get("patient_profile", {}).get("conditions") or []
    location = (args.get("location") or {}).get("state") or None
    phases = args.get("phase") or []
    status = args.get("status") or "recruiting"

    found = {}
    fallback = False
    for condition in conditions or [None]:
        result = await ctx.trials.search(
            condition=condition,
            location=location,
            phase=phases[0] if len(phases) == 1 else None,
            status=status,
        )
        fallback = fallback or result.fallbackMode
        for trial in result.trials:
            if not phases or trial.phase in phases:
                found.setdefault(trial.nctId, trial)

    trials = list(found.values())
    if not trials:
        summary = "I couldn't find any recruiting trials matching that right now."
    elif len(trials) == 1:
        summary = f"I found one trial that may fit: {trials[0].title}."
    else:
        summary = f"I found {len(trials)} trials that may fit. The first is {trials[0].title}."

    return ToolResult(
        summary=summary,
        data={
            "totalFound": len(trials),
            "trials": [
                {
                    "id": t.id,
                    "nctId": t.nctId,
                    "title": t.title,
                    "phase": t.phase,
                    "summary": t.briefSummary,
                    "locations": [f"{loc.city}, {loc.state}" for loc in t.location],
                }
                for t in trials[:5]
            ],
            "usingRealData": not fallback,
        },
        context_update={"last_search": {"conditions": conditions, "trial_ids": [t.id for t in trials]}},
    )


async def get_trial_details(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    if ctx.trials is None:
        raise RuntimeError("No trial data source available")
    trial_id = args["trialId"]
    trial = await ctx.trials.detail(trial_id)
    if trial is None:
        return ToolResult(summary=f"I couldn't find a trial with the id {trial_id}.", success=False)
    return ToolResult(
        summary=f"{trial.title}. {trial.briefSummary}",
        data={"trial": trial.model_dump(exclude_none=True)},
    )


async def calculate_eligibility(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    if ctx.trials is None:
        raise RuntimeError("No trial data source available")
    trial = await ctx.trials.detail(args["trialId"])
    if trial is None:
        return ToolResult(summary="I couldn't find that trial to check eligibility.", success=False)

    age = args.get("patientAge")
    conditions = [c.lower() for c in args.get("patientConditions") or []]
    gender = (args.get("patientGender") or "").lower()
    criteria = trial.eligibilityCriteria

    score = 0
    reasons, issues = [], []
    if any(c in tc.lower() or tc.lower() in c for c in conditions for tc in trial.condition):
        score += 50
        reasons.append("Has a qualifying medical condition")
    else:
        issues.append("Condition may not match the study focus")

    min_age = int(criteria.minAge) if criteria.minAge and criteria.minAge.isdigit() else 0
    max_age = int(criteria.maxAge) if criteria.maxAge and criteria.maxAge.isdigit() else 200
    if age is not None and min_age <= age <= max_age:
        score += 30
        reasons.append("Meets age requirements")
    else:
        issues.append(f"Age requirement is {min_age} to {max_age}")

    if criteria.gender == "all" or criteria.gender == gender:
        score += 20
        reasons.append("Meets gender criteria")

    if score >= 80:
        status = "eligible"
        summary = "You appear to meet the basic eligibility criteria. The next step would be screening with the study team."
    elif score >= 50:
        status = "potentially_eligible"
        summary = "You may be eligible, though a few criteria need a closer look by the study team."
    else:
        status = "not_eligible"
        summary = "It looks like you may not meet this trial's main criteria, but the study team can confirm."

    return ToolResult(
        summary=summary,
        data={
            "trialId": trial.id,
            "eligibilityStatus": status,
            "eligibilityScore": score,
            "matchReasons": reasons,
            "potentialIssues": issues,
        },
        context_update={"eligibility": {trial.id: status}},
    )


def save_trial_for_later(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    trial_id = args["trialId"]
    saved = list(ctx.context.get("saved_trials", []))
    if trial_id not in saved:
        saved.append(trial_id)
    return ToolResult(
        summary="I've saved that trial to your list for later.",
        data={"savedTrialId": trial_id, "notes": args.get("notes")},
        context_update={"saved_trials": saved},
    )


# Enrollment tools


def submit_trial_application(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    application_id = _new_id("app")
    application = {
        "trialId": args["trialId"],
        "contactPreference": args.get("contactPreference", "phone"),
        "urgency": args.get("urgency", "routine"),
        "status": "submitted",
    }
    return ToolResult(
        summary="Your application is in. The study team will contact you within two to three business days.",
        data={
            "applicationId": application_id,
            "nextSteps": [
                "Study team reviews your application",
                "Initial phone screening call",
                "Screening visit if eligible",
                "Informed consent",
            ],
            "studyCoordinator": {"name": "Sarah Johnson, RN", "phone": "(617) 555-0123"},
        },
        context_update={"applications": {application_id: application}},
    )


_APPLICATION_STATUS_MESSAGES = {
    "submitted": "Your application has been submitted and is waiting for initial review.",
    "screening_scheduled": "Your screening appointment has been scheduled.",
}


def check_application_status(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    application_id = args["applicationId"]
    application = ctx.context.get("applications", {}).get(application_id)
    if application is None:
        return ToolResult(summary="I couldn't find an application with that number.", success=False)
    status = application.get("status", "submitted")
    message = _APPLICATION_STATUS_MESSAGES.get(status, f"Your application status is {status}.")
    return ToolResult(summary=message, data={"applicationId": application_id, "status": status})


def schedule_screening_visit(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    application_id = args["applicationId"]
    date = args["preferredDate"]
    time_of_day = args.get("preferredTime") or "10:00 AM"
    return ToolResult(
        summary=f"You're booked for a screening visit on {date} at {time_of_day} at University Medical Center. Please bring a photo ID and a list of your medications.",
        data={
            "scheduledDate": date,
            "scheduledTime": time_of_day,
            "location": "University Medical Center, 123 Medical Drive, Boston, MA 02115",
            "duration": "2-3 hours",
        },
        context_update={
            "applications": {application_id: {"status": "screening_scheduled", "screeningDate": date}}
        },
    )


_BASE_CHECKLIST = [
    "Submit application",
    "Initial phone screening",
    "Review informed consent",
    "Screening visit",
    "Medical history review",
    "Physical examination",
    "Laboratory tests",
    "Eligibility confirmation",
    "Final enrollment",
]

_PHASE_CHECKLIST = {
    "Phase I": ["Safety monitoring plan review", "Dose escalation explanation"],
    "Phase III": ["Randomization process explanation", "Quality of life questionnaires"],
}


def get_enrollment_checklist(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    steps = _BASE_CHECKLIST + _PHASE_CHECKLIST.get(args.get("trialPhase", ""), [])
    return ToolResult(
        summary=f"Enrollment usually takes two to four weeks and has {len(steps)} steps, starting with a phone screening.",
        data={"checklist": steps, "estimatedTimeframe": "2-4 weeks from application to enrollment"},
    )


def coordinate_with_study_team(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    expected = {"high": "the same day", "medium": "one to two business days"}.get(
        args.get("urgency", "low"), "two to three business days"
    )
    return ToolResult(
        summary=f"I've passed your message to the study team. Expect a response within {expected}.",
        data={"messageId": _new_id("msg"), "expectedResponse": expected},
    )


# Support tools

_SUPPORT_RESPONSES = {
    "anxiety": "It's completely normal to feel anxious about joining a clinical trial. Talking with your care team about your worries can really help.",
    "fear": "Feeling afraid is understandable. Trials have many safety measures, and you can withdraw at any time.",
    "uncertainty": "Uncertainty is a natural part of this. Asking questions whenever they come up helps you stay in control.",
}


def provide_emotional_support(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    concern = args.get("concern", "other")
    message = _SUPPORT_RESPONSES.get(
        concern, "Thank you for sharing that. Your feelings are valid and important."
    )
    return ToolResult(summary=message, data={"concern": concern, "supportMessage": message})


def explain_side_effects(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    return ToolResult(
        summary="Side effects depend on the treatment, but common ones are tiredness, nausea and headaches. Report anything new to the study team right away.",
        data={
            "treatment": args.get("treatment"),
            "commonSideEffects": ["Fatigue", "Nausea", "Changes in appetite", "Injection site reactions", "Headaches"],
            "emergencyContacts": {"studyTeam": "(617) 555-0123", "emergency": "911"},
        },
    )


_RIGHTS = {
    "informed_consent": "You have the right to understand every part of a study before agreeing to take part.",
    "withdraw": "You can leave a study at any time without penalty, and your regular care is not affected.",
    "privacy": "Your personal and medical information must be kept confidential.",
    "all": "You have the right to informed consent, to withdraw at any time, to privacy, to quality care, and to ask questions.",
}


def explain_patient_rights(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    right = args.get("specificRight", "all")
    description = _RIGHTS.get(right, _RIGHTS["all"])
    return ToolResult(summary=description, data={"right": right, "description": description})


_RESOURCES = {
    "financial": ["Patient assistance programs", "Trial expense coverage", "Co-pay assistance programs"],
    "transportation": ["Medical transport services", "Volunteer driver programs", "Travel reimbursement programs"],
    "support_groups": ["Disease-specific support groups", "Online support communities", "Caregiver support groups"],
}


def connect_with_resources(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    resource_type = args.get("resourceType", "support_groups")
    options = _RESOURCES.get(resource_type, _RESOURCES["support_groups"])
    return ToolResult(
        summary=f"Some options are {options[0].lower()} and {options[1].lower()}. Would you like help with either?",
        data={"resourceType": resource_type, "options": options},
    )


def provide_educational_info(args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    topic = args.get("topic", "clinical_trial_basics")
    if topic == "participant_safety":
        content = "Patient safety is the top priority. Review boards oversee every trial and can stop it if safety concerns arise."
    else:
        content = "Clinical trials are research studies that follow strict protocols and ethical review to test new ways to prevent, detect, or treat disease."
    return ToolResult(summary=content, data={"topic": topic, "content": content})


INTAKE_AGENT = Agent(
    id=AgentId.INTAKE,
    display_name="Patient Intake",
    handoff_description="Collects medical information, demographics and preferences for trial matching.",
    introduction=(
        "Hello! You've reached MedConnect Clinical Trials. I'm here to help you find clinical "
        "trials that could be right for you. To get started, could you tell me about the "
        "condition you'd like to find a trial for?"
    ),
    instructions=(
        "You are a compassionate clinical trial intake specialist for "
        f"{COMPANY_NAME}. Welcome callers warmly, explain how clinical trials can give access "
        "to new treatments, and collect their medical conditions, medications, age, gender, "
        "location, travel willingness and trial phase preferences. Record details with "
        "record_patient_details as the caller mentions them. Once you have a complete profile, "
        "call create_patient_profile. Explain medical terms simply and be empathetic."
        + PHONE_STYLE
    ),
    tools=(
        Tool(
            "record_patient_details",
            "Records profile details the caller has mentioned so far; any subset of fields.",
            object_schema(_PROFILE_FIELDS),
            record_patient_details,
        ),
        Tool(
            "create_patient_profile",
            "Creates the complete patient profile once all required details are known.",
            object_schema(
                _PROFILE_FIELDS,
                ("age", "gender", "conditions", "city", "state", "country", "travelWillingness"),
            ),
            create_patient_profile,
        ),
        Tool(
            "update_patient_profile",
            "Updates fields of the existing patient profile.",
            {
                "type": "object",
                "properties": {
                    "updates": {
                        "type": "object",
                        "description": "Fields to update",
                        "additionalProperties": True,
                    }
                },
                "required": ["updates"],
            },
            update_patient_profile,
        ),
        Tool(
            "explain_clinical_trials",
            "Gives a short educational explanation about clinical trials.",
            object_schema(
                {"topic": {"type": "string", "enum": sorted(_EXPLANATIONS)}}, ("topic",)
            ),
            explain_clinical_trials,
        ),
    ),
    handoffs=frozenset({AgentId.SEARCH, AgentId.SUPPORT}),
)

SEARCH_AGENT = Agent(
    id=AgentId.SEARCH,
    display_name="Trial Search",
    handoff_description="Searches and matches clinical trials to the caller's profile.",
    introduction="I can help you look for clinical trials. What condition should I search for?",
    instructions=(
        "You are an expert clinical trial search specialist. Search for trials that match the "
        "caller's profile, explain trial details in plain language, say why a trial may be a good "
        "match, and be honest about eligibility requirements. When the caller wants to apply, "
        "transfer them to enrollment."
        + PHONE_STYLE
    ),
    tools=(
        Tool(
            "search_trials_by_condition",
            "Searches for clinical trials by medical condition.",
            object_schema(
                {
                    "conditions": string_list("Medical conditions to search for"),
                    "location": {
                        "type": "object",
                        "properties": {
                            "city": {"type": "string"},
                            "state": {"type": "string"},
                            "country": {"type": "string"},
                        },
                    },
                    "phase": string_list("Preferred trial phases"),
                    "status": {"type": "string", "enum": ["recruiting", "active", "all"]},
                },
                ("conditions",),
            ),
            search_trials_by_condition,
        ),
        Tool(
            "get_trial_details",
            "Gets detailed information about one clinical trial.",
            object_schema({"trialId": {"type": "string"}}, ("trialId",)),
            get_trial_details,
        ),
        Tool(
            "calculate_eligibility",
            "Estimates whether the caller meets a trial's basic eligibility criteria.",
            object_schema(
                {
                    "trialId": {"type": "string"},
                    "patientAge": {"type": "number"},
                    "patientGender": {"type": "string"},
                    "patientConditions": string_list("Patient medical conditions"),
                },
                ("trialId", "patientAge", "patientConditions"),
            ),
            calculate_eligibility,
        ),
        Tool(
            "save_trial_for_later",
            "Saves a trial to the caller's list for later review.",
            object_schema(
                {"trialId": {"type": "string"}, "notes": {"type": "string"}}, ("trialId",)
            ),
            save_trial_for_later,
        ),
    ),
    handoffs=frozenset({AgentId.INTAKE, AgentId.ENROLLMENT, AgentId.SUPPORT}),
)

ENROLLMENT_AGENT = Agent(
    id=AgentId.ENROLLMENT,
    display_name="Enrollment",
    handoff_description="Handles trial applications, screening visits and study-team coordination.",
    introduction="I can help you apply for a trial. Which trial are you interested in?",
    instructions=(
        "You are a clinical trial enrollment specialist. Guide the caller through applying, "
        "explain what screening involves, help schedule screening visits and pass messages to "
        "the study team. Be supportive and explain each step."
        + PHONE_STYLE
    ),
    tools=(
        Tool(
            "submit_trial_application",
            "Submits the caller's application for a specific trial.",
            object_schema(
                {
                    "trialId": {"type": "string"},
                    "contactPreference": {"type": "string", "enum": ["phone", "email", "both"]},
                    "urgency": {"type": "string", "enum": ["routine", "urgent", "emergency"]},
                    "additionalNotes": {"type": "string"},
                },
                ("trialId", "contactPreference"),
            ),
            submit_trial_application,
        ),
        Tool(
            "check_application_status",
            "Checks the status of an application made on this call.",
            object_schema({"applicationId": {"type": "string"}}, ("applicationId",)),
            check_application_status,
        ),
        Tool(
            "schedule_screening_visit",
            "Schedules a screening visit for an application.",
            object_schema(
                {
                    "applicationId": {"type": "string"},
                    "preferredDate": {"type": "string", "description": "YYYY-MM-DD"},
                    "preferredTime": {"type": "string"},
                },
                ("applicationId", "preferredDate"),
            ),
            schedule_screening_visit,
        ),
        Tool(
            "get_enrollment_checklist",
            "Lists the steps from application to enrollment.",
            object_schema({"trialPhase": {"type": "string"}}, ("trialPhase",)),
            get_enrollment_checklist,
        ),
        Tool(
            "coordinate_with_study_team",
            "Relays a message from the caller to the study team.",
            object_schema(
                {
                    "trialId": {"type": "string"},
                    "message": {"type": "string"},
                    "urgency": {"type": "string", "enum": ["low", "medium", "high"]},
                },
                ("trialId", "message"),
            ),
            coordinate_with_study_team,
        ),
    ),
    handoffs=frozenset({AgentId.SEARCH, AgentId.SUPPORT}),
)

SUPPORT_AGENT = Agent(
    id=AgentId.SUPPORT,
    display_name="Patient Support",
    handoff_description="Answers general questions and offers emotional support.",
    introduction="I'm here to help with any questions or concerns you have. What's on your mind?",
    instructions=(
        "You are a compassionate clinical trial support specialist. Offer emotional support, "
        "answer questions about trials and procedures, explain patient rights and side effects, "
        "and connect callers with resources. Patients may be anxious, so be patient and clear."
        + PHONE_STYLE
    ),
    tools=(
        Tool(
            "provide_emotional_support",
            "Offers support for a specific kind of concern.",
            object_schema(
                {
                    "concern": {
                        "type": "string",
                        "enum": ["anxiety", "fear", "uncertainty", "side_effects", "family_concerns", "financial", "other"],
                    },
                    "specificConcern": {"type": "string"},
                },
                ("concern",),
            ),
            provide_emotional_support,
        ),
        Tool(
            "explain_side_effects",
            "Explains potential side effects and how to manage them.",
            object_schema({"treatment": {"type": "string"}}, ("treatment",)),
            explain_side_effects,
        ),
        Tool(
            "explain_patient_rights",
            "Explains a participant's rights in clinical trials.",
            object_schema(
                {"specificRight": {"type": "string", "enum": sorted(_RIGHTS)}}, ("specificRight",)
            ),
            explain_patient_rights,
        ),
        Tool(
            "connect_with_resources",
            "Suggests support resources of a given type.",
            object_schema(
                {"resourceType": {"type": "string", "enum": sorted(_RESOURCES)}}, ("resourceType",)
            ),
            connect_with_resources,
        ),
        Tool(
            "provide_educational_info",
            "Explains how clinical research works.",
            object_schema(
                {"topic": {"type": "string", "enum": ["clinical_trial_basics", "participant_safety"]}},
                ("topic",),
            ),
            provide_educational_info,
        ),
    ),
    handoffs=frozenset({AgentId.INTAKE, AgentId.SEARCH, AgentId.ENROLLMENT}),
)

CLINICAL_TRIALS_AGENTS = (INTAKE_AGENT, SEARCH_AGENT, ENROLLMENT_AGENT, SUPPORT_AGENT)
