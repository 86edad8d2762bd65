"""
Clinical-trial data sources.

Two interchangeable sources answer ``search`` and ``detail``:

- MockTrialDataSource: a small built-in dataset used for demos and tests.
- ClinicalTrialsGovClient: the public ClinicalTrials.gov v2 REST API, with a
  short-lived response cache, request spacing, and a fallback to the mock data
  whenever the registry cannot be reached.
"""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from clinconnect.config.constants import LOGGER_NAME
from clinconnect.services.audio_cache import LRUCache

logger = logging.getLogger(LOGGER_NAME)

CT_GOV_API_BASE = "https://clinicaltrials.gov/api/v2"
CT_GOV_CACHE_TTL = 5 * 60  # seconds
CT_GOV_MIN_REQUEST_INTERVAL = 0.2  # seconds between requests
CT_GOV_PAGE_SIZE = 20

TRIAL_SOURCE_MOCK = "mock"
TRIAL_SOURCE_CT_GOV = "clinicaltrials.gov"

_PHASE_CODES = {
    "phase i": "PHASE1",
    "phase ii": "PHASE2",
    "phase iii": "PHASE3",
    "phase iv": "PHASE4",
}

_STATUS_MAP = {
    "RECRUITING": "recruiting",
    "NOT_YET_RECRUITING": "recruiting",
    "ACTIVE_NOT_RECRUITING": "active",
    "COMPLETED": "completed",
    "SUSPENDED": "suspended",
    "TERMINATED": "terminated",
    "WITHDRAWN": "terminated",
    "UNKNOWN": "suspended",
}


class TrialLocation(BaseModel):
    facility: str = "Not specified"
    city: str = ""
    state: str = ""
    country: str = ""
    contactName: Optional[str] = None
    contactPhone: Optional[str] = None
    contactEmail: Optional[str] = None


class EligibilityCriteria(BaseModel):
    inclusionCriteria: List[str] = Field(default_factory=list)
    exclusionCriteria: List[str] = Field(default_factory=list)
    minAge: Optional[str] = None
    maxAge: Optional[str] = None
    gender: str = "all"


class ClinicalTrial(BaseModel):
    """One study, in the shape the agents and the HTTP API expose."""

    id: str
    nctId: str
    title: str
    briefSummary: str = ""
    detailedDescription: Optional[str] = None
    phase: str = "Not Applicable"
    status: str = "recruiting"
    condition: List[str] = Field(default_factory=list)
    intervention: List[str] = Field(default_factory=list)
    sponsor: str = ""
    location: List[TrialLocation] = Field(default_factory=list)
    eligibilityCriteria: EligibilityCriteria = Field(default_factory=EligibilityCriteria)
    estimatedEnrollment: int = 0
    studyStartDate: Optional[str] = None
    url: Optional[str] = None


class TrialSearchResult(BaseModel):
    trials: List[ClinicalTrial] = Field(default_factory=list)
    totalCount: int = 0
    nextPageToken: Optional[str] = None
    fallbackMode: bool = False


class TrialDataSource(ABC):
    """Interface every trial data source implements."""

    @abstractmethod
    async def search(
        self,
        condition: Optional[str] = None,
        location: Optional[str] = None,
        phase: Optional[str] = None,
        status: str = "recruiting",
    ) -> TrialSearchResult:
        """Find trials matching the given filters."""

    @abstractmethod
    async def detail(self, trial_id: str) -> Optional[ClinicalTrial]:
        """Return one trial, or None if it does not exist."""

    async def aclose(self) -> None:
        return None


MOCK_TRIALS: List[Dict[str, Any]] = [
    {
        "id": "trial_001",
        "nctId": "NCT12345678",
        "title": "Phase II Study of Novel Cancer Immunotherapy",
        "briefSummary": "Testing a new immunotherapy treatment for advanced solid tumors using CAR-T cell therapy.",
        "detailedDescription": (
            "This randomized, double-blind, placebo-controlled study evaluates the safety and "
            "efficacy of a novel CAR-T cell therapy in patients with advanced solid tumors who "
            "have failed standard treatment options."
        ),
        "phase": "Phase II",
        "status": "recruiting",
        "condition": ["Cancer", "Solid Tumor", "Advanced Cancer", "Oncology"],
        "intervention": ["Immunotherapy", "CAR-T Cell Therapy", "Biological Therapy"],
        "sponsor": "University Medical Center",
        "location": [
            {
                "facility": "University Medical Center",
                "city": "Boston",
                "state": "Massachusetts",
                "country": "United States",
                "contactName": "Dr. Sarah Johnson",
                "contactPhone": "(617) 555-0123",
                "contactEmail": "clinicaltrials@umc.edu",
            },
            {
                "facility": "Regional Cancer Center",
                "city": "Cambridge",
                "state": "Massachusetts",
                "country": "United States",
                "contactName": "Dr. Michael Roberts",
                "contactPhone": "(617) 555-0456",
                "contactEmail": "trials@rcc.org",
            },
        ],
        "eligibilityCriteria": {
            "inclusionCriteria": [
                "Age 18 years or older",
                "Histologically confirmed solid tumor",
                "Progressive disease after standard therapy",
                "ECOG performance status 0-2",
                "Adequate organ function",
            ],
            "exclusionCriteria": [
                "Active autoimmune disease",
                "Concurrent malignancy",
                "Severe cardiac dysfunction",
                "Active infection",
                "Pregnancy or nursing",
            ],
            "minAge": "18",
            "maxAge": "85",
            "gender": "all",
        },
        "estimatedEnrollment": 50,
        "studyStartDate": "2024-03-15",
        "url": "https://clinicaltrials.gov/ct2/show/NCT12345678",
    },
    {
        "id": "trial_002",
        "nctId": "NCT87654321",
        "title": "Phase III Diabetes Management Study",
        "briefSummary": "Comparing new diabetes medication to standard treatment for improved glucose control.",
        "detailedDescription": (
            "This large-scale study compares the effectiveness of a new diabetes medication "
            "versus standard metformin treatment in patients with Type 2 diabetes."
        ),
        "phase": "Phase III",
        "status": "recruiting",
        "condition": ["Type 2 Diabetes", "Diabetes Mellitus", "Metabolic Disorder"],
        "intervention": ["Investigational Drug", "Metformin", "Lifestyle Intervention"],
        "sponsor": "Pharmaceutical Research Institute",
        "location": [
            {
                "facility": "Regional Diabetes Center",
                "city": "Chicago",
                "state": "Illinois",
                "country": "United States",
                "contactName": "Dr. Michael Chen",
                "contactPhone": "(312) 555-0456",
                "contactEmail": "diabetes.trials@rdc.org",
            },
            {
                "facility": "Midwest Endocrine Clinic",
                "city": "Milwaukee",
                "state": "Wisconsin",
                "country": "United States",
                "contactName": "Dr. Lisa Thompson",
                "contactPhone": "(414) 555-0789",
                "contactEmail": "research@midwestendo.com",
            },
        ],
        "eligibilityCriteria": {
            "inclusionCriteria": [
                "Type 2 Diabetes diagnosis",
                "HbA1c between 7-11%",
                "Age 25-75 years",
                "BMI 25-40 kg/m²",
                "Stable on current diabetes medication",
            ],
            "exclusionCriteria": [
                "Type 1 Diabetes",
                "Severe kidney disease",
                "Recent heart attack",
                "Pregnancy",
                "Severe liver disease",
            ],
            "minAge": "25",
            "maxAge": "75",
            "gender": "all",
        },
        "estimatedEnrollment": 200,
        "studyStartDate": "2024-01-10",
        "url": "https://clinicaltrials.gov/ct2/show/NCT87654321",
    },
    {
        "id": "trial_003",
        "nctId": "NCT11223344",
        "title": "Alzheimer's Disease Prevention Study",
        "briefSummary": "Evaluating a new drug for preventing cognitive decline in early Alzheimer's disease.",
        "detailedDescription": (
            "This study examines whether a new medication can slow or prevent cognitive decline "
            "in patients with mild cognitive impairment who are at risk for Alzheimer's disease."
        ),
        "phase": "Phase II",
        "status": "recruiting",
        "condition": [
            "Alzheimer's Disease",
            "Mild Cognitive Impairment",
            "Dementia",
            "Neurodegenerative Disease",
        ],
        "intervention": ["Investigational Drug", "Cognitive Training", "Lifestyle Intervention"],
        "sponsor": "National Institute on Aging",
        "location": [
            {
                "facility": "Memory Care Institute",
                "city": "San Francisco",
                "state": "California",
                "country": "United States",
                "contactName": "Dr. Jennifer Kim",
                "contactPhone": "(415) 555-0123",
                "contactEmail": "memory.trials@mci.org",
            },
            {
                "facility": "Neurological Research Center",
                "city": "Los Angeles",
                "state": "California",
                "country": "United States",
                "contactName": "Dr. Robert Martinez",
                "contactPhone": "(310) 555-0456",
                "contactEmail": "neuro.research@nrc.edu",
            },
        ],
        "eligibilityCriteria": {
            "inclusionCriteria": [
                "Age 55-85 years",
                "Mild cognitive impairment diagnosis",
                "Positive amyloid PET scan",
                "Stable on current medications",
                "Study partner available",
            ],
            "exclusionCriteria": [
                "Dementia diagnosis",
                "Significant psychiatric illness",
                "Recent stroke",
                "Substance abuse",
                "Inability to undergo MRI",
            ],
            "minAge": "55",
            "maxAge": "85",
            "gender": "all",
        },
        "estimatedEnrollment": 150,
        "studyStartDate": "2024-02-01",
        "url": "https://clinicaltrials.gov/ct2/show/NCT11223344",
    },
    {
        "id": "trial_004",
        "nctId": "NCT55667788",
        "title": "Heart Failure Treatment Innovation Study",
        "briefSummary": "Testing a new device-based therapy for patients with heart failure.",
        "detailedDescription": (
            "This study evaluates the safety and effectiveness of a new implantable device "
            "designed to improve heart function in patients with chronic heart failure."
        ),
        "phase": "Phase III",
        "status": "recruiting",
        "condition": ["Heart Failure", "Cardiovascular Disease", "Chronic Heart Failure"],
        "intervention": ["Medical Device", "Implantable Device", "Standard Care"],
        "sponsor": "CardioTech Medical",
        "location": [
            {
                "facility": "Heart Institute of Texas",
                "city": "Houston",
                "state": "Texas",
                "country": "United States",
                "contactName": "Dr. Patricia Williams",
                "contactPhone": "(713) 555-0123",
                "contactEmail": "heart.trials@hit.org",
            },
            {
                "facility": "Cardiac Care Center",
                "city": "Dallas",
                "state": "Texas",
                "country": "United States",
                "contactName": "Dr. James Anderson",
                "contactPhone": "(214) 555-0456",
                "contactEmail": "cardiac.research@ccc.com",
            },
        ],
        "eligibilityCriteria": {
            "inclusionCriteria": [
                "Age 18-80 years",
                "Chronic heart failure diagnosis",
                "NYHA Class II-III symptoms",
                "Ejection fraction 35% or less",
                "Stable on optimal medical therapy",
            ],
            "exclusionCriteria": [
                "Recent heart attack",
                "Planned cardiac surgery",
                "Severe kidney disease",
                "Life expectancy less than 1 year",
                "Pregnancy",
            ],
            "minAge": "18",
            "maxAge": "80",
            "gender": "all",
        },
        "estimatedEnrollment": 300,
        "studyStartDate": "2024-04-01",
        "url": "https://clinicaltrials.gov/ct2/show/NCT55667788",
    },
]


def _matches_condition(trial: ClinicalTrial, condition: str) -> bool:
    wanted = condition.lower()
    return any(wanted in c.lower() or c.lower() in wanted for c in trial.condition)


def _matches_location(trial: ClinicalTrial, location: str) -> bool:
    wanted = location.lower()
    return any(wanted in loc.city.lower() or wanted in loc.state.lower() for loc in trial.location)


class MockTrialDataSource(TrialDataSource):
    """Filters the built-in MOCK_TRIALS dataset."""

    def __init__(self, trials: Optional[List[Dict[str, Any]]] = None):
        self.trials = [ClinicalTrial.model_validate(t) for t in (trials or MOCK_TRIALS)]

    async def search(
        self,
        condition: Optional[str] = None,
        location: Optional[str] = None,
        phase: Optional[str] = None,
        status: str = "recruiting",
    ) -> TrialSearchResult:
        trials = self.trials
        if condition:
            trials = [t for t in trials if _matches_condition(t, condition)]
        if location:
            trials = [t for t in trials if _matches_location(t, location)]
        if phase:
            trials = [t for t in trials if t.phase.lower() == phase.lower()]
        if status and status != "all":
            trials = [t for t in trials if t.status == status]
        return TrialSearchResult(trials=trials, totalCount=len(trials))

    async def detail(self, trial_id: str) -> Optional[ClinicalTrial]:
        for trial in self.trials:
            if trial_id in (trial.id, trial.nctId):
                return trial
        return None


def parse_eligibility_criteria(text: str) -> EligibilityCriteria:
    """Split free-text eligibility into inclusion and exclusion bullet lists."""
    inclusion = re.search(r"Inclusion Criteria:([\s\S]*?)(?=Exclusion Criteria:|$)", text, re.I)
    exclusion = re.search(r"Exclusion Criteria:([\s\S]*)$", text, re.I)

    def items(section: Optional[re.Match]) -> List[str]:
        if not section:
            return []
        parts = (p.strip(" \t*-") for p in re.split(r"\n|\d+\.", section.group(1)))
        return [p for p in parts if len(p) > 10][:10]

    return EligibilityCriteria(inclusionCriteria=items(inclusion), exclusionCriteria=items(exclusion))


def transform_study(study: Dict[str, Any]) -> ClinicalTrial:
    """Convert one ClinicalTrials.gov v2 study record into a ClinicalTrial."""
    protocol = study.get("protocolSection", {})
    identification = protocol.get("identificationModule", {})
    status_module = protocol.get("statusModule", {})
    description = protocol.get("descriptionModule", {})
    design = protocol.get("designModule", {})
    eligibility_module = protocol.get("eligibilityModule", {})

    nct_id = identification.get("nctId", "")
    phases = design.get("phases") or []

    locations = []
    for loc in protocol.get("contactsLocationsModule", {}).get("locations", []):
        contact = (loc.get("contacts") or [{}])[0]
        locations.append(
            TrialLocation(
                facility=loc.get("facility") or "Not specified",
                city=loc.get("city", ""),
                state=loc.get("state", ""),
                country=loc.get("country", ""),
                contactName=contact.get("name"),
                contactPhone=contact.get("phone"),
                contactEmail=contact.get("email"),
            )
        )

    eligibility = parse_eligibility_criteria(eligibility_module.get("eligibilityCriteria", ""))
    sex = eligibility_module.get("sex", "ALL").upper()
    eligibility.gender = {"MALE": "male", "FEMALE": "female"}.get(sex, "all")
    eligibility.minAge = eligibility_module.get("minimumAge")
    eligibility.maxAge = eligibility_module.get("maximumAge")

    return ClinicalTrial(
        id=nct_id,
        nctId=nct_id,
        title=identification.get("briefTitle", ""),
        briefSummary=description.get("briefSummary", ""),
        detailedDescription=description.get("detailedDescription"),
        phase=", ".join(phases) if phases else "Not Applicable",
        status=_STATUS_MAP.get(status_module.get("overallStatus", ""), "suspended"),
        condition=protocol.get("conditionsModule", {}).get("conditions", []),
        intervention=[
            i.get("name", "")
            for i in protocol.get("armsInterventionsModule", {}).get("interventions", [])
        ],
        sponsor=protocol.get("sponsorCollaboratorsModule", {}).get("leadSponsor", {}).get("name", ""),
        location=locations,
        eligibilityCriteria=eligibility,
        estimatedEnrollment=(design.get("enrollmentInfo") or {}).get("count", 0),
        studyStartDate=status_module.get("studyFirstPostDate"),
        url=f"https://clinicaltrials.gov/study/{nct_id}",
    )


class ClinicalTrialsGovClient(TrialDataSource):
    """
    ClinicalTrials.gov v2 client.

    Responses are cached for ``cache_ttl`` seconds (details for twice as long).
    Any transport or decoding failure is logged and answered from ``fallback``.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = CT_GOV_API_BASE,
        cache_ttl: float = CT_GOV_CACHE_TTL,
        fallback: Optional[TrialDataSource] = None,
    ):
        self._http = http_client or httpx.AsyncClient(timeout=10.0)
        self._owns_http = http_client is None
        self.base_url = base_url.rstrip("/")
        self.cache_ttl = cache_ttl
        self.fallback = fallback or MockTrialDataSource()
        self._cache = LRUCache(max_size=256, default_ttl=cache_ttl)
        self._rate_lock = asyncio.Lock()
        self._last_request = 0.0

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        async with self._rate_lock:
            wait = CT_GOV_MIN_REQUEST_INTERVAL - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()
        logger.debug(f"GET {self.base_url}{path} {params or ''}")
        return await self._http.get(f"{self.base_url}{path}", params=params)

    async def search(
        self,
        condition: Optional[str] = None,
        location: Optional[str] = None,
        phase: Optional[str] = None,
        status: str = "recruiting",
    ) -> TrialSearchResult:
        params: Dict[str, Any] = {"pageSize": CT_GOV_PAGE_SIZE, "format": "json"}
        if condition:
            params["query.cond"] = condition
        if location:
            params["query.locn"] = location
        if phase and phase.lower() in _PHASE_CODES:
            params["filter.studyType"] = "INTERVENTIONAL"
            params["filter.phase"] = _PHASE_CODES[phase.lower()]
        if status == "recruiting":
            params["filter.overallStatus"] = "RECRUITING"
        elif status == "active":
            params["filter.overallStatus"] = "ACTIVE_NOT_RECRUITING"

        cache_key = "search:" + json.dumps(params, sort_keys=True)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            response = await self._get("/studies", params)
            response.raise_for_status()
            data = response.json()
            result = TrialSearchResult(
                trials=[transform_study(s) for s in data.get("studies", [])],
                totalCount=data.get("totalCount", 0),
                nextPageToken=data.get("nextPageToken"),
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"ClinicalTrials.gov search failed, using mock data: {e}")
            result = await self.fallback.search(condition, location, phase, status)
            result.fallbackMode = True
            return result

        self._cache.set(cache_key, result)
        return result

    async def detail(self, trial_id: str) -> Optional[ClinicalTrial]:
        cache_key = f"detail:{trial_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            response = await self._get(f"/studies/{trial_id}")
            if response.status_code == 404:
                return await self.fallback.detail(trial_id)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"ClinicalTrials.gov detail for {trial_id} failed, using mock data: {e}")
            return await self.fallback.detail(trial_id)

        if "protocolSection" in data:
            study = data
        elif data.get("studies"):
            study = data["studies"][0]
        else:
            return None

        trial = transform_study(study)
        self._cache.set(cache_key, trial, ttl=self.cache_ttl * 2)
        return trial

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def create_trial_data_source(source: str) -> TrialDataSource:
    """Build the data source named by the TRIAL_DATA_SOURCE setting."""
    if source == TRIAL_SOURCE_MOCK:
        return MockTrialDataSource()
    if source == TRIAL_SOURCE_CT_GOV:
        return ClinicalTrialsGovClient()
    raise ValueError(f"Unknown trial data source: {source}")
